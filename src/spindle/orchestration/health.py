"""Health reporting for runs.

Turns a ``RunStatus`` snapshot into the health view shown to operators:
one check per unit, carrying the daemon's display label and its current
probe message.

Status rules:
- unit READY / SUCCEEDED          -> healthy
- unit PENDING / WAITING / RUNNING -> degraded (starting)
- unit FAILED                     -> unhealthy; the run is degraded
- run FAILED or STOPPED           -> unhealthy
- bootstrap run SUCCEEDED         -> healthy (its daemons were stopped on purpose)

Example:
    >>> report = run_health(handle.status())
    >>> report.status
    <HealthStatus.DEGRADED: 'degraded'>
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from spindle.orchestration.models import RunPhase, RunStatus, UnitState, UnitStatus


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class HealthStatus(str, Enum):
    """Health status levels."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthCheckResult:
    """Result of a single health check."""

    name: str
    status: HealthStatus
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class HealthReport:
    """Overall health report."""

    status: HealthStatus
    checks: list[HealthCheckResult]
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def healthy(self) -> bool:
        """Check if overall status is healthy."""
        return self.status == HealthStatus.HEALTHY

    def check(self, name: str) -> HealthCheckResult:
        for result in self.checks:
            if result.name == name:
                return result
        raise KeyError(name)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "checks": [
                {
                    "name": check.name,
                    "status": check.status.value,
                    "message": check.message,
                    "details": check.details,
                }
                for check in self.checks
            ],
        }


_UNIT_STATUS = {
    UnitState.READY: HealthStatus.HEALTHY,
    UnitState.SUCCEEDED: HealthStatus.HEALTHY,
    UnitState.PENDING: HealthStatus.DEGRADED,
    UnitState.WAITING: HealthStatus.DEGRADED,
    UnitState.RUNNING: HealthStatus.DEGRADED,
    UnitState.FAILED: HealthStatus.UNHEALTHY,
    UnitState.CANCELLED: HealthStatus.DEGRADED,
    UnitState.STOPPED: HealthStatus.DEGRADED,
}


def _unit_check(unit: UnitStatus) -> HealthCheckResult:
    if unit.state is UnitState.FAILED and unit.error:
        message = unit.error.get("message", "failed")
    elif unit.probe_message:
        message = unit.probe_message
    else:
        message = unit.state.value

    details: dict[str, Any] = {"kind": unit.kind.value, "state": unit.state.value}
    if unit.display_label:
        details["display_label"] = unit.display_label
    if unit.exit_code is not None:
        details["exit_code"] = unit.exit_code

    return HealthCheckResult(
        name=unit.unit_id,
        status=_UNIT_STATUS[unit.state],
        message=message,
        details=details,
    )


def run_health(status: RunStatus) -> HealthReport:
    """Build the health report of one run snapshot."""
    checks = [_unit_check(unit) for unit in status.units]

    if status.phase in (RunPhase.FAILED, RunPhase.STOPPED):
        overall = HealthStatus.UNHEALTHY
    elif status.phase is RunPhase.SUCCEEDED:
        overall = HealthStatus.HEALTHY
    elif any(c.status is not HealthStatus.HEALTHY for c in checks):
        overall = HealthStatus.DEGRADED
    else:
        overall = HealthStatus.HEALTHY

    return HealthReport(status=overall, checks=checks)
