"""Orchestration exceptions - structured error hierarchy.

All orchestration exceptions inherit from ``spindle.core.errors.OrchestrationError``
so that callers can catch the entire family with a single ``except`` clause.

Hierarchy::

    OrchestrationError  (from spindle.core.errors)
      ├── GraphError                  ── static; raised before any process starts
      │     ├── CyclicDependencyError   ── requires edges form a cycle
      │     ├── UnknownDependencyError  ── requires names a missing unit
      │     └── DuplicateUnitError      ── two units share an id
      ├── MountResolutionError        ── context creation (from spindle.runtime)
      ├── UnitFailure                 ── runtime; propagates along requires edges
      │     ├── ExecutionError          ── oneshot exited non-zero / could not start
      │     ├── ProbeDeadlineExceeded   ── daemon never became ready
      │     ├── ProbeFatalError         ── daemon probe reported a fatal condition
      │     ├── DaemonExitedError       ── daemon exited while supervised
      │     └── DependencyFailedError   ── a required unit failed
      ├── BootstrapDeadlineExceeded   ── whole bootstrap run too slow
      └── RunStateError               ── misuse of a run handle / supervisor
"""

from spindle.core.errors import ErrorCategory, OrchestrationError
from spindle.runtime._types import MountResolutionError


class GraphError(OrchestrationError):
    """Base for static unit-graph validation errors."""

    default_category = ErrorCategory.VALIDATION


class CyclicDependencyError(GraphError):
    """Raised when the requires graph contains a cycle (self-reference included)."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        cycle_str = " -> ".join(cycle)
        super().__init__(f"Cyclic dependency between units: {cycle_str}")


class UnknownDependencyError(GraphError):
    """Raised when a unit requires a unit id that is not in the set."""

    def __init__(self, unit_id: str, missing: list[str]):
        self.unit_id = unit_id
        self.missing = missing
        super().__init__(f"Unit '{unit_id}' requires unknown units: {', '.join(missing)}")
        self.with_context(unit_id=unit_id)


class DuplicateUnitError(GraphError):
    """Raised when two units in one run share an id."""

    def __init__(self, unit_id: str):
        self.unit_id = unit_id
        super().__init__(f"Duplicate unit id: {unit_id}")
        self.with_context(unit_id=unit_id)


class UnitFailure(OrchestrationError):
    """Base for runtime failures of a single unit."""

    default_retryable = True

    def __init__(self, unit_id: str, message: str, **kwargs):
        self.unit_id = unit_id
        super().__init__(message, **kwargs)
        self.with_context(unit_id=unit_id)


class ExecutionError(UnitFailure):
    """A oneshot exited non-zero (or its process could not be started)."""

    default_category = ErrorCategory.EXECUTION

    def __init__(self, unit_id: str, exit_code: int, stderr: str = "", **kwargs):
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(unit_id, f"Unit '{unit_id}' exited with code {exit_code}", **kwargs)

    def to_dict(self):
        d = super().to_dict()
        d["exit_code"] = self.exit_code
        if self.stderr:
            d["stderr"] = self.stderr
        return d


class ProbeDeadlineExceeded(UnitFailure):
    """A daemon's readiness probe did not succeed before its deadline."""

    default_category = ErrorCategory.PROBE

    def __init__(self, unit_id: str, reason: str, attempts: int | None = None):
        self.reason = reason
        self.attempts = attempts
        super().__init__(unit_id, f"Unit '{unit_id}' never became ready: {reason}")


class ProbeFatalError(UnitFailure):
    """A daemon's readiness probe reported a fatal condition."""

    default_category = ErrorCategory.PROBE
    default_retryable = False

    def __init__(self, unit_id: str, reason: str):
        self.reason = reason
        super().__init__(unit_id, f"Unit '{unit_id}' failed its readiness probe: {reason}")


class DaemonExitedError(UnitFailure):
    """A supervised daemon exited on its own. It is not restarted."""

    default_category = ErrorCategory.EXECUTION

    def __init__(self, unit_id: str, exit_code: int | None):
        self.exit_code = exit_code
        super().__init__(unit_id, f"Daemon '{unit_id}' exited with code {exit_code}")


class DependencyFailedError(UnitFailure):
    """A unit was failed because a unit it (transitively) requires failed."""

    default_category = ErrorCategory.ORCHESTRATION

    def __init__(self, unit_id: str, failed_dependency: str):
        self.failed_dependency = failed_dependency
        super().__init__(
            unit_id, f"Unit '{unit_id}' not started: dependency '{failed_dependency}' failed"
        )


class BootstrapDeadlineExceeded(OrchestrationError):
    """A bootstrap run did not reach success before its wall-clock deadline."""

    default_category = ErrorCategory.TIMEOUT
    default_retryable = True

    def __init__(self, deadline_seconds: float, pending: list[str], detail: str | None = None):
        self.deadline_seconds = deadline_seconds
        self.pending = pending
        self.detail = detail
        message = (
            f"Bootstrap deadline of {deadline_seconds:g}s exceeded; "
            f"not yet successful: {', '.join(pending) or '-'}"
        )
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class RunStateError(OrchestrationError):
    """Raised when a run handle or supervisor is used in the wrong state."""


__all__ = [
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
]
