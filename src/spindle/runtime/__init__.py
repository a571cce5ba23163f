"""Process execution layer: backends, execution contexts, readiness probes.

Public surface::

    from spindle.runtime import (
        CommandSpec, ContextSpec, Mount, MountKind,
        ExecutionContext, ExecutionContextManager,
        LocalProcessBackend, ProcessBackend,
        ProbePolicy, ProbeResult, ReadinessProbe, poll,
    )
"""

from spindle.runtime._base import BaseProcessBackend
from spindle.runtime._types import (
    BackendHealth,
    CommandSpec,
    ContextSpec,
    ExecutionContext,
    Mount,
    MountKind,
    MountResolutionError,
    ProbeResult,
    ProbeStatus,
    ProcessBackend,
    ProcessHandle,
    ProcessResult,
    ResolvedMount,
)
from spindle.runtime.context import ExecutionContextManager
from spindle.runtime.local_process import LocalProcessBackend
from spindle.runtime.probes import (
    ProbePolicy,
    ProbeScope,
    ReadinessProbe,
    command_probe,
    http_probe,
    poll,
    tcp_probe,
)

__all__ = [
    "BackendHealth",
    "BaseProcessBackend",
    "CommandSpec",
    "ContextSpec",
    "ExecutionContext",
    "ExecutionContextManager",
    "LocalProcessBackend",
    "Mount",
    "MountKind",
    "MountResolutionError",
    "ProbePolicy",
    "ProbeResult",
    "ProbeScope",
    "ProbeStatus",
    "ProcessBackend",
    "ProcessHandle",
    "ProcessResult",
    "ReadinessProbe",
    "ResolvedMount",
    "command_probe",
    "http_probe",
    "poll",
    "tcp_probe",
]
