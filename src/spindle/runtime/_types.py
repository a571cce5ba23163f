"""Runtime types and protocols for the process execution layer.

This module defines the abstractions the orchestrator uses to run work:

- CommandSpec: argument vector + environment overlay
- Mount / ContextSpec: what an execution context needs mounted
- ExecutionContext: an isolated process namespace created from a ContextSpec
- ProcessBackend: protocol for running oneshots and spawning daemons
- ProcessHandle / ProcessResult: what the backend hands back
- ProbeResult: Ready | NotReady(reason) | Fatal(reason)
- BackendHealth: backend reachability check result
- MountResolutionError: a context could not be created

Design Notes:
    ProcessBackend is the *consumed* process execution interface. It knows
    nothing about units, dependency order or run modes; those belong to the
    scheduler. The backend only guarantees that every process it starts is
    attached to the context it was started in, so that destroying the
    context terminates it.

Architecture:

    .. code-block:: text

        ┌──────────────────────────────────────────────────────────────┐
        │                     _types.py Module Map                     │
        ├──────────────────────────────────────────────────────────────┤
        │                                                              │
        │  ContextSpec ──(create)──► ExecutionContext                  │
        │   └─ Mount[]                 ├─ root: Path                   │
        │                              ├─ mounts: ResolvedMount[]      │
        │                              └─ handles: ProcessHandle{}     │
        │                                                              │
        │  ProcessBackend (Protocol)                                   │
        │   run(ctx, cmd)   → ProcessResult   (oneshot, blocking)      │
        │   spawn(ctx, cmd) → ProcessHandle   (daemon, non-blocking)   │
        │   probe(handle)   → ProbeResult     (liveness side channel)  │
        │   wait(handle)    → exit code                                │
        │   terminate(handle)                 (idempotent)             │
        │   health()        → BackendHealth                            │
        └──────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from spindle.core.errors import ErrorCategory, OrchestrationError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


def _generate_id(prefix: str) -> str:
    """Generate a short unique id with a readable prefix."""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CommandSpec:
    """Argument vector plus environment overlay for one process.

    Example:
        >>> cmd = CommandSpec(["bitcoind", "-datadir=/data"], {"RPC_USER": "u"})
        >>> cmd.program
        'bitcoind'
    """

    argv: tuple[str, ...]
    env: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "argv", tuple(self.argv))
        object.__setattr__(self, "env", dict(self.env))

    @property
    def program(self) -> str:
        return self.argv[0] if self.argv else ""

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"argv": list(self.argv)}
        if self.env:
            d["env"] = dict(self.env)
        return d


# ---------------------------------------------------------------------------
# Mounts and contexts
# ---------------------------------------------------------------------------

class MountKind(str, Enum):
    """Whether a mount exposes a directory or a single file."""

    DIRECTORY = "directory"
    FILE = "file"


@dataclass(frozen=True)
class Mount:
    """One resource mounted into an execution context.

    ``volume`` names either one of this service's volumes or, when
    ``dependency`` is set, a volume exported by that dependency service.
    ``subpath`` narrows the mount to a path inside the volume.
    """

    volume: str
    mountpoint: str
    subpath: str | None = None
    read_only: bool = False
    kind: MountKind = MountKind.DIRECTORY
    dependency: str | None = None

    @property
    def source_label(self) -> str:
        base = f"{self.dependency}:{self.volume}" if self.dependency else self.volume
        return f"{base}/{self.subpath}" if self.subpath else base


@dataclass(frozen=True)
class ContextSpec:
    """Declaration of an execution context: a name and its ordered mounts."""

    name: str
    mounts: tuple[Mount, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "mounts", tuple(self.mounts))


@dataclass(frozen=True)
class ResolvedMount:
    """A mount after resolution: the concrete host source and target paths."""

    mount: Mount
    source: Path
    target: Path

    @property
    def read_only(self) -> bool:
        return self.mount.read_only


@dataclass
class ProcessHandle:
    """Reference to a process started by a backend.

    ``ref`` is stable for the lifetime of the process and is what the
    backend uses for every later operation.
    """

    ref: str
    context_id: str
    program: str
    pid: int | None = None
    started_at: datetime = field(default_factory=_utcnow)


@dataclass
class ExecutionContext:
    """An isolated process namespace with its own mounted resources.

    Owned by the ``ExecutionContextManager`` that created it. Processes
    started in the context are attached to it and terminated when the
    context is destroyed.
    """

    name: str
    root: Path
    id: str = field(default_factory=lambda: _generate_id("ctx"))
    mounts: list[ResolvedMount] = field(default_factory=list)
    handles: dict[str, ProcessHandle] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    destroyed: bool = False

    def attach(self, handle: ProcessHandle) -> None:
        self.handles[handle.ref] = handle

    def detach(self, handle: ProcessHandle) -> None:
        self.handles.pop(handle.ref, None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "root": str(self.root),
            "mounts": [
                {
                    "source": str(m.source),
                    "target": str(m.target),
                    "read_only": m.read_only,
                    "kind": m.mount.kind.value,
                }
                for m in self.mounts
            ],
            "processes": len(self.handles),
            "destroyed": self.destroyed,
        }


class MountResolutionError(OrchestrationError):
    """Raised when an execution context cannot resolve one of its mounts.

    Fatal to that context only: units assigned to other contexts proceed.
    """

    default_category = ErrorCategory.MOUNT

    def __init__(self, context_name: str, reason: str):
        self.context_name = context_name
        self.reason = reason
        super().__init__(f"Cannot create context '{context_name}': {reason}")
        self.with_context(context_name=context_name)


# ---------------------------------------------------------------------------
# Process results and probe results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProcessResult:
    """Outcome of a run-to-completion process."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class ProbeStatus(str, Enum):
    """Readiness verdicts. NOT_READY re-polls, FATAL stops polling."""

    READY = "ready"
    NOT_READY = "not_ready"
    FATAL = "fatal"


@dataclass(frozen=True)
class ProbeResult:
    """Result of one readiness check or of a whole poll.

    Example:
        >>> ProbeResult.not_ready("connection refused").is_ready
        False
    """

    status: ProbeStatus
    reason: str | None = None

    @classmethod
    def ready(cls, reason: str | None = None) -> ProbeResult:
        return cls(ProbeStatus.READY, reason)

    @classmethod
    def not_ready(cls, reason: str) -> ProbeResult:
        return cls(ProbeStatus.NOT_READY, reason)

    @classmethod
    def fatal(cls, reason: str) -> ProbeResult:
        return cls(ProbeStatus.FATAL, reason)

    @property
    def is_ready(self) -> bool:
        return self.status is ProbeStatus.READY

    @property
    def is_fatal(self) -> bool:
        return self.status is ProbeStatus.FATAL

    def __str__(self) -> str:
        return f"{self.status.value}: {self.reason}" if self.reason else self.status.value


@dataclass(frozen=True)
class BackendHealth:
    """Result of a backend health check."""

    healthy: bool
    backend: str
    message: str | None = None
    latency_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"healthy": self.healthy, "backend": self.backend}
        if self.message:
            d["message"] = self.message
        if self.latency_ms is not None:
            d["latency_ms"] = self.latency_ms
        return d


# ---------------------------------------------------------------------------
# ProcessBackend - the consumed execution protocol
# ---------------------------------------------------------------------------

@runtime_checkable
class ProcessBackend(Protocol):
    """Protocol for process execution backends.

    All methods are async. ``run`` blocks until the process exits;
    ``spawn`` returns as soon as the process has started. Every process a
    backend starts is attached to the given context so that
    ``ExecutionContextManager.destroy`` can terminate it.

    Lifecycle:
        spawn → probe/wait (any number of times) → terminate
        run   → (cancellation of the awaiting task terminates the process)
    """

    @property
    def name(self) -> str:
        """Unique backend name (e.g. 'local', 'stub')."""
        ...

    async def run(self, context: ExecutionContext, command: CommandSpec) -> ProcessResult:
        """Run a process to completion and capture its output."""
        ...

    async def spawn(self, context: ExecutionContext, command: CommandSpec) -> ProcessHandle:
        """Start a long-running process and return immediately."""
        ...

    async def probe(self, handle: ProcessHandle) -> ProbeResult:
        """Liveness side channel: FATAL once the process has exited."""
        ...

    async def wait(self, handle: ProcessHandle) -> int:
        """Wait for a spawned process to exit and return its exit code."""
        ...

    async def terminate(self, handle: ProcessHandle) -> None:
        """Terminate the process group. Idempotent."""
        ...

    async def health(self) -> BackendHealth:
        """Check backend reachability."""
        ...
