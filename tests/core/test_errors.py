"""Tests for the spindle error hierarchy."""

from __future__ import annotations

import pytest

from spindle.core.errors import (
    BackendError,
    ConfigError,
    ErrorCategory,
    ErrorContext,
    OrchestrationError,
    SpindleError,
    is_retryable,
)
from spindle.orchestration.exceptions import (
    BootstrapDeadlineExceeded,
    CyclicDependencyError,
    DependencyFailedError,
    ExecutionError,
    MountResolutionError,
    ProbeDeadlineExceeded,
    ProbeFatalError,
    UnitFailure,
    UnknownDependencyError,
)


class TestSpindleError:
    def test_defaults(self):
        error = SpindleError("boom")
        assert error.message == "boom"
        assert error.category == ErrorCategory.INTERNAL
        assert error.retryable is False
        assert str(error) == "boom"

    def test_cause_is_chained(self):
        cause = OSError("disk full")
        error = SpindleError("cannot create root", cause=cause)
        assert error.cause is cause
        assert error.__cause__ is cause
        assert error.to_dict()["cause"] == "disk full"

    def test_with_context_sets_typed_fields_and_metadata(self):
        error = SpindleError("x").with_context(unit_id="db", run_id="run-1", attempt=3)
        assert error.context.unit_id == "db"
        assert error.context.run_id == "run-1"
        assert error.context.metadata == {"attempt": 3}

    def test_to_dict_omits_empty_context(self):
        d = SpindleError("x").to_dict()
        assert d == {
            "error_type": "SpindleError",
            "message": "x",
            "category": "INTERNAL",
            "retryable": False,
        }

    def test_context_to_dict_only_non_none(self):
        ctx = ErrorContext(unit_id="a", metadata={"k": "v"})
        assert ctx.to_dict() == {"unit_id": "a", "k": "v"}

    def test_repr(self):
        assert repr(ConfigError("bad")) == "ConfigError('bad', category=CONFIG)"


class TestCategories:
    def test_config_error_not_retryable(self):
        assert ConfigError("x").retryable is False
        assert ConfigError("x").category == ErrorCategory.CONFIG

    def test_backend_error_carries_exit_code(self):
        error = BackendError("not found", exit_code=127, retryable=False)
        assert error.exit_code == 127
        assert error.category == ErrorCategory.EXECUTION
        assert is_retryable(error) is False

    def test_is_retryable_ignores_foreign_exceptions(self):
        assert is_retryable(ValueError("x")) is False
        assert is_retryable(BackendError("x")) is True


class TestOrchestrationTaxonomy:
    @pytest.mark.parametrize(
        "error",
        [
            CyclicDependencyError(["a", "b", "a"]),
            UnknownDependencyError("a", ["ghost"]),
            MountResolutionError("main", "volume main does not exist"),
            ExecutionError("a", 1),
            ProbeDeadlineExceeded("d", "deadline exceeded"),
            BootstrapDeadlineExceeded(120.0, ["d"]),
        ],
    )
    def test_all_are_orchestration_errors(self, error):
        assert isinstance(error, OrchestrationError)
        assert isinstance(error, SpindleError)

    def test_cycle_message_names_units(self):
        error = CyclicDependencyError(["a", "b", "a"])
        assert error.cycle == ["a", "b", "a"]
        assert "a -> b -> a" in str(error)
        assert error.category == ErrorCategory.VALIDATION

    def test_unknown_dependency_context(self):
        error = UnknownDependencyError("api", ["db", "cache"])
        assert error.unit_id == "api"
        assert error.context.unit_id == "api"
        assert "db, cache" in str(error)

    def test_mount_error_category(self):
        error = MountResolutionError("main", "volume main does not exist")
        assert error.category == ErrorCategory.MOUNT
        assert error.context.context_name == "main"

    def test_execution_error_to_dict_includes_stderr(self):
        error = ExecutionError("migrate", 2, stderr="relation exists")
        d = error.to_dict()
        assert d["exit_code"] == 2
        assert d["stderr"] == "relation exists"
        assert d["context"]["unit_id"] == "migrate"
        assert isinstance(error, UnitFailure)

    def test_probe_errors(self):
        deadline = ProbeDeadlineExceeded("db", "deadline of 10s exceeded", attempts=9)
        assert deadline.category == ErrorCategory.PROBE
        assert deadline.attempts == 9
        fatal = ProbeFatalError("db", "bad credentials")
        assert fatal.retryable is False

    def test_dependency_failed_names_root(self):
        error = DependencyFailedError("api", "migrate")
        assert error.failed_dependency == "migrate"
        assert "migrate" in str(error)

    def test_bootstrap_deadline_lists_pending(self):
        error = BootstrapDeadlineExceeded(2.5, ["db", "init"], detail="db: connection refused")
        assert error.category == ErrorCategory.TIMEOUT
        assert "2.5s" in str(error)
        assert "db, init" in str(error)
        assert "connection refused" in str(error)
