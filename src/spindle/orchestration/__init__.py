"""
Spindle Orchestration - dependency-ordered, health-gated unit runs.

WHY
───
A service instance is rarely one process. It is a database that must be
listening before migrations run, a config generator that must finish before
the server starts, and a set of daemons that must be restarted as a whole
when an operator changes a password. Orchestration turns that into a
validated graph of units and drives it.

ARCHITECTURE
────────────
::

    DependencyGraph        ─ validates requires edges, yields frontiers
    UnitScheduler          ─ starts runs (Continuous | Bootstrap)
      └── RunHandle        ─ status(), settled(), wait(), stop()
    ReactiveSupervisor     ─ rebuilds the run when bindings change
      └── ReactiveBinding  ─ (source, projection, last observed value)

    Supporting:
      sources.py           ─ configuration store, interfaces, dependencies
      health.py            ─ RunStatus → HealthReport
      manifest.py          ─ YAML manifest → RunPlan + bindings

MODULE MAP (recommended reading order)
──────────────────────────────────────
1. exceptions.py   ─ error hierarchy
2. models.py       ─ Unit, states, snapshots
3. resolver.py     ─ DependencyGraph
4. scheduler.py    ─ UnitScheduler, RunHandle
5. health.py       ─ health reports
6. sources.py      ─ observable external state
7. reactive.py     ─ ReactiveSupervisor
8. manifest.py     ─ declarative manifests

Example:
    from spindle.orchestration import RunMode, Unit, UnitScheduler

    units = [
        Unit.daemon("db", ["postgres", "-D", "data"], probe=db_probe),
        Unit.oneshot("migrate", ["app", "migrate"], requires=["db"]),
    ]
    result = await scheduler.run_until_success(units, deadline=120)
"""

from spindle.orchestration.exceptions import (
    BootstrapDeadlineExceeded,
    CyclicDependencyError,
    DaemonExitedError,
    DependencyFailedError,
    DuplicateUnitError,
    ExecutionError,
    GraphError,
    MountResolutionError,
    ProbeDeadlineExceeded,
    ProbeFatalError,
    RunStateError,
    UnitFailure,
    UnknownDependencyError,
)
from spindle.orchestration.health import (
    HealthCheckResult,
    HealthReport,
    HealthStatus,
    run_health,
)
from spindle.orchestration.manifest import ServiceManifest
from spindle.orchestration.models import (
    RunMode,
    RunPhase,
    RunPlan,
    RunResult,
    RunStatus,
    Transition,
    Unit,
    UnitKind,
    UnitState,
    UnitStatus,
)
from spindle.orchestration.reactive import ReactiveBinding, ReactiveSupervisor
from spindle.orchestration.resolver import DependencyGraph, validate_units
from spindle.orchestration.scheduler import RunHandle, UnitScheduler
from spindle.orchestration.sources import (
    ConfigurationStore,
    DependencyState,
    DependencyStateProvider,
    FileConfigurationStore,
    InterfaceDescriptor,
    InterfaceDescriptorProvider,
    ObservableSource,
    field_path,
)

__all__ = [
    # Exceptions
    "BootstrapDeadlineExceeded",
    "CyclicDependencyError",
    "DaemonExitedError",
    "DependencyFailedError",
    "DuplicateUnitError",
    "ExecutionError",
    "GraphError",
    "MountResolutionError",
    "ProbeDeadlineExceeded",
    "ProbeFatalError",
    "RunStateError",
    "UnitFailure",
    "UnknownDependencyError",
    # Health
    "HealthCheckResult",
    "HealthReport",
    "HealthStatus",
    "run_health",
    # Model
    "RunMode",
    "RunPhase",
    "RunPlan",
    "RunResult",
    "RunStatus",
    "Transition",
    "Unit",
    "UnitKind",
    "UnitState",
    "UnitStatus",
    # Engine
    "DependencyGraph",
    "validate_units",
    "RunHandle",
    "UnitScheduler",
    "ReactiveBinding",
    "ReactiveSupervisor",
    # Sources
    "ConfigurationStore",
    "DependencyState",
    "DependencyStateProvider",
    "FileConfigurationStore",
    "InterfaceDescriptor",
    "InterfaceDescriptorProvider",
    "ObservableSource",
    "field_path",
    # Manifests
    "ServiceManifest",
]
