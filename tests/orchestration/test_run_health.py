"""Tests for run health reporting and status models."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from spindle.core.errors import ConfigError
from spindle.orchestration.exceptions import ExecutionError
from spindle.orchestration.health import HealthStatus, run_health
from spindle.orchestration.models import (
    RunMode,
    RunPhase,
    RunResult,
    RunStatus,
    Unit,
    UnitKind,
    UnitState,
    UnitStatus,
)
from spindle.runtime.probes import ReadinessProbe


def status(phase: RunPhase, *units: UnitStatus) -> RunStatus:
    return RunStatus("run-1", RunMode.CONTINUOUS, phase, list(units), datetime.now(UTC))


class TestRunHealth:
    def test_all_ready_is_healthy(self):
        report = run_health(status(
            RunPhase.SUPERVISING,
            UnitStatus("db", UnitKind.DAEMON, UnitState.READY, "Postgres", "listening on 5432"),
            UnitStatus("migrate", UnitKind.ONESHOT, UnitState.SUCCEEDED, exit_code=0),
        ))
        assert report.healthy
        db = report.check("db")
        assert db.message == "listening on 5432"
        assert db.details == {"kind": "daemon", "state": "ready", "display_label": "Postgres"}
        assert report.check("migrate").details["exit_code"] == 0

    def test_starting_units_degrade(self):
        report = run_health(status(
            RunPhase.RUNNING,
            UnitStatus("db", UnitKind.DAEMON, UnitState.RUNNING, probe_message="connection refused"),
        ))
        assert report.status is HealthStatus.DEGRADED
        assert report.check("db").message == "connection refused"

    def test_failed_unit_message_is_error(self):
        report = run_health(status(
            RunPhase.SUPERVISING,
            UnitStatus(
                "db", UnitKind.DAEMON, UnitState.FAILED, exit_code=3,
                error={"message": "Daemon 'db' exited with code 3"},
            ),
        ))
        assert report.status is HealthStatus.DEGRADED
        assert report.check("db").status is HealthStatus.UNHEALTHY
        assert report.check("db").message == "Daemon 'db' exited with code 3"

    @pytest.mark.parametrize("phase", [RunPhase.FAILED, RunPhase.STOPPED])
    def test_ended_runs_are_unhealthy(self, phase):
        report = run_health(status(phase, UnitStatus("a", UnitKind.ONESHOT, UnitState.SUCCEEDED)))
        assert report.status is HealthStatus.UNHEALTHY

    def test_to_dict(self):
        report = run_health(status(RunPhase.SUCCEEDED, UnitStatus("a", UnitKind.ONESHOT, UnitState.SUCCEEDED)))
        d = report.to_dict()
        assert d["status"] == "healthy"
        assert d["checks"][0]["name"] == "a"

    def test_unknown_check(self):
        with pytest.raises(KeyError):
            run_health(status(RunPhase.RUNNING)).check("ghost")


class TestModels:
    def test_state_predicates(self):
        assert UnitState.READY.is_success and not UnitState.READY.is_terminal
        assert UnitState.SUCCEEDED.is_success and UnitState.SUCCEEDED.is_terminal
        assert UnitState.STOPPED.is_terminal and not UnitState.STOPPED.is_success
        assert not UnitState.WAITING.is_terminal

    def test_unit_validation(self):
        with pytest.raises(ConfigError):
            Unit.oneshot("", ["x"])
        with pytest.raises(ConfigError, match="daemons only"):
            Unit(
                id="a",
                kind=UnitKind.ONESHOT,
                command=Unit.oneshot("a", ["a"]).command,
                probe=ReadinessProbe(lambda scope: None),
            )

    def test_requires_is_frozen(self):
        unit = Unit.daemon("api", ["api"], requires=["db", "db"])
        assert unit.requires == frozenset({"db"})
        assert unit.is_daemon

    def test_run_result_failed_unit(self):
        s = status(RunPhase.FAILED)
        result = RunResult("run-1", RunMode.BOOTSTRAP, False, s, ExecutionError("migrate", 2))
        assert result.failed_unit == "migrate"
        d = result.to_dict()
        assert d["failed_unit"] == "migrate"
        assert d["failure"]["exit_code"] == 2
        assert RunResult("run-1", RunMode.BOOTSTRAP, True, s).failed_unit is None

    def test_unit_status_lookup(self):
        s = status(RunPhase.RUNNING, UnitStatus("a", UnitKind.ONESHOT, UnitState.PENDING))
        assert s.states == {"a": UnitState.PENDING}
        assert s.to_dict()["units"][0]["state"] == "pending"
        with pytest.raises(KeyError):
            s.unit("b")
