"""Orchestration data model.

Units and the graph built from them are created fresh on every orchestration
pass; nothing in this module is persisted.

.. code-block:: text

    Unit
    ├── id               unique within a run
    ├── kind             ONESHOT | DAEMON
    ├── context          name of the ExecutionContext hosting it
    ├── command          CommandSpec (argv + env)
    ├── requires         unit ids that must succeed / be ready first
    └── DAEMON only:
        ├── probe        ReadinessProbe | None (None = ready once spawned)
        └── display_label

    Per-unit state machine:

    PENDING ─► WAITING ─► RUNNING ─┬─► SUCCEEDED         (oneshot exit 0)
       │          │                ├─► READY ─► STOPPED  (daemon, on teardown)
       │          │                └─► FAILED
       └──────────┴─► FAILED (dependency failed) / CANCELLED (torn down first)
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from spindle.core.errors import ConfigError, SpindleError
from spindle.runtime._types import CommandSpec, ContextSpec
from spindle.runtime.probes import ReadinessProbe


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UnitKind(str, Enum):
    """Run-to-completion oneshot or long-lived daemon."""

    ONESHOT = "oneshot"
    DAEMON = "daemon"


class RunMode(str, Enum):
    """How a run treats daemons once the graph has been walked."""

    CONTINUOUS = "continuous"  # daemons persist; run never completes
    BOOTSTRAP = "bootstrap"    # everything torn down once all units succeed


class UnitState(str, Enum):
    """Lifecycle state of one unit within one run."""

    PENDING = "pending"
    WAITING = "waiting"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    READY = "ready"
    FAILED = "failed"
    CANCELLED = "cancelled"
    STOPPED = "stopped"

    @property
    def is_success(self) -> bool:
        return self in (UnitState.SUCCEEDED, UnitState.READY)

    @property
    def is_terminal(self) -> bool:
        return self in (
            UnitState.SUCCEEDED,
            UnitState.FAILED,
            UnitState.CANCELLED,
            UnitState.STOPPED,
        )


class RunPhase(str, Enum):
    """Lifecycle of a whole run."""

    RUNNING = "running"          # graph still being walked
    SUPERVISING = "supervising"  # continuous: walk finished, daemons kept alive
    SUCCEEDED = "succeeded"      # bootstrap: every unit succeeded, torn down
    FAILED = "failed"            # bootstrap: failure or deadline, torn down
    STOPPED = "stopped"          # explicit stop or superseded by a rebuild


@dataclass(frozen=True)
class Unit:
    """A named piece of work scheduled by the orchestrator.

    Example:
        >>> db = Unit.daemon("db", ["postgres", "-D", "/data"], context="main")
        >>> migrate = Unit.oneshot("migrate", ["app", "migrate"], requires=["db"])
    """

    id: str
    kind: UnitKind
    command: CommandSpec
    context: str = "main"
    requires: frozenset[str] = frozenset()
    probe: ReadinessProbe | None = None
    display_label: str | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ConfigError("Unit id must not be empty")
        object.__setattr__(self, "requires", frozenset(self.requires))
        if self.kind is UnitKind.ONESHOT and (self.probe is not None or self.display_label):
            raise ConfigError(
                f"Unit '{self.id}': readiness probes and display labels apply to daemons only"
            )

    @classmethod
    def oneshot(
        cls,
        id: str,
        argv: Iterable[str],
        *,
        env: Mapping[str, str] | None = None,
        context: str = "main",
        requires: Iterable[str] = (),
    ) -> Unit:
        return cls(
            id=id,
            kind=UnitKind.ONESHOT,
            command=CommandSpec(tuple(argv), dict(env or {})),
            context=context,
            requires=frozenset(requires),
        )

    @classmethod
    def daemon(
        cls,
        id: str,
        argv: Iterable[str],
        *,
        env: Mapping[str, str] | None = None,
        context: str = "main",
        requires: Iterable[str] = (),
        probe: ReadinessProbe | None = None,
        display_label: str | None = None,
    ) -> Unit:
        return cls(
            id=id,
            kind=UnitKind.DAEMON,
            command=CommandSpec(tuple(argv), dict(env or {})),
            context=context,
            requires=frozenset(requires),
            probe=probe,
            display_label=display_label,
        )

    @property
    def is_daemon(self) -> bool:
        return self.kind is UnitKind.DAEMON


@dataclass
class RunPlan:
    """Output of a graph-building function: the units and their contexts."""

    units: list[Unit]
    contexts: dict[str, ContextSpec] = field(default_factory=dict)


@dataclass(frozen=True)
class Transition:
    """One state change, in the order the scheduler observed it."""

    seq: int
    unit_id: str
    state: UnitState
    at: datetime = field(default_factory=_utcnow)


@dataclass
class UnitStatus:
    """Point-in-time snapshot of one unit for health/UI reporting."""

    unit_id: str
    kind: UnitKind
    state: UnitState
    display_label: str | None = None
    probe_message: str | None = None
    exit_code: int | None = None
    error: dict[str, Any] | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "kind": self.kind.value,
            "state": self.state.value,
            "display_label": self.display_label,
            "probe_message": self.probe_message,
            "exit_code": self.exit_code,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class RunStatus:
    """Per-unit snapshot of a run."""

    run_id: str
    mode: RunMode
    phase: RunPhase
    units: list[UnitStatus]
    started_at: datetime

    def unit(self, unit_id: str) -> UnitStatus:
        for status in self.units:
            if status.unit_id == unit_id:
                return status
        raise KeyError(unit_id)

    @property
    def states(self) -> dict[str, UnitState]:
        return {s.unit_id: s.state for s in self.units}

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "mode": self.mode.value,
            "phase": self.phase.value,
            "started_at": self.started_at.isoformat(),
            "units": [u.to_dict() for u in self.units],
        }


@dataclass
class RunResult:
    """Outcome of a run once it has finished (bootstrap) or been stopped."""

    run_id: str
    mode: RunMode
    succeeded: bool
    status: RunStatus
    failure: BaseException | None = None
    elapsed_seconds: float = 0.0

    @property
    def failed_unit(self) -> str | None:
        """Id of the first failing unit, if the failure is tied to one."""
        unit_id = getattr(self.failure, "unit_id", None)
        if unit_id is None and isinstance(self.failure, SpindleError):
            unit_id = self.failure.context.unit_id
        return unit_id

    def to_dict(self) -> dict[str, Any]:
        failure = self.failure
        return {
            "run_id": self.run_id,
            "mode": self.mode.value,
            "succeeded": self.succeeded,
            "failed_unit": self.failed_unit,
            "failure": failure.to_dict() if isinstance(failure, SpindleError) else (str(failure) if failure else None),
            "elapsed_seconds": self.elapsed_seconds,
            "status": self.status.to_dict(),
        }
