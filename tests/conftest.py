"""
Shared pytest fixtures and configuration for spindle tests.

This module provides:
- A scripted process backend and a context manager rooted in tmp_path
- A scheduler wired to both
- Probe helpers with short intervals so readiness tests run in milliseconds
- Settings / logging-context isolation

Usage:
    Fixtures are auto-discovered by pytest; request them by name.

    @pytest.mark.asyncio
    async def test_something(scheduler, stub_backend):
        ...
"""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest

from spindle.core.logging import clear_context
from spindle.core.settings import reset_settings
from spindle.runtime._types import ContextSpec, ExecutionContext, ProbeResult
from spindle.runtime.context import ExecutionContextManager
from spindle.runtime.mock_backends import StubProcessBackend
from spindle.runtime.probes import ProbePolicy, ProbeScope, ReadinessProbe
from spindle.orchestration.scheduler import UnitScheduler


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark tests without explicit markers as unit tests."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Drop cached settings and bound log context around every test."""
    for key in ("SPINDLE_LOG_LEVEL", "SPINDLE_WORK_DIR", "SPINDLE_VOLUMES_DIR"):
        monkeypatch.delenv(key, raising=False)
    reset_settings()
    clear_context()
    yield
    reset_settings()
    clear_context()


# =============================================================================
# Runtime fixtures
# =============================================================================


class RecordingContextManager(ExecutionContextManager):
    """Context manager that records create/destroy order."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.events: list[tuple[str, str]] = []

    async def create(self, spec: ContextSpec) -> ExecutionContext:
        context = await super().create(spec)
        self.events.append(("create", context.id))
        return context

    async def destroy(self, context: ExecutionContext) -> None:
        if not context.destroyed:
            self.events.append(("destroy", context.id))
        await super().destroy(context)


@pytest.fixture
def volumes_dir(tmp_path: Path) -> Path:
    """Volumes directory holding a ``main`` volume."""
    path = tmp_path / "volumes"
    (path / "main").mkdir(parents=True)
    return path


@pytest.fixture
def stub_backend() -> StubProcessBackend:
    return StubProcessBackend()


@pytest.fixture
def context_manager(stub_backend: StubProcessBackend, tmp_path: Path, volumes_dir: Path) -> RecordingContextManager:
    return RecordingContextManager(
        stub_backend,
        work_dir=tmp_path / "contexts",
        volumes_dir=volumes_dir,
    )


@pytest.fixture
def scheduler(stub_backend: StubProcessBackend, context_manager: RecordingContextManager) -> UnitScheduler:
    return UnitScheduler(stub_backend, context_manager, bootstrap_deadline_seconds=5.0)


# =============================================================================
# Probe helpers
# =============================================================================


class ScriptedProbe:
    """Readiness check that reports NOT_READY ``failures`` times, then ``final``."""

    def __init__(self, failures: int, final: ProbeResult | None = None) -> None:
        self.failures = failures
        self.final = final or ProbeResult.ready("accepting connections")
        self.attempts = 0

    async def __call__(self, scope: ProbeScope) -> ProbeResult:
        self.attempts += 1
        if self.attempts <= self.failures:
            return ProbeResult.not_ready(f"connection refused ({self.attempts})")
        return self.final


@pytest.fixture
def fast_policy() -> ProbePolicy:
    return ProbePolicy(interval_seconds=0.02, deadline_seconds=1.0)


@pytest.fixture
def scripted_probe(fast_policy: ProbePolicy):
    """Factory: ``scripted_probe(failures, final=None, policy=None) -> (probe, script)``."""

    def make(
        failures: int = 0,
        final: ProbeResult | None = None,
        policy: ProbePolicy | None = None,
    ) -> tuple[ReadinessProbe, ScriptedProbe]:
        script = ScriptedProbe(failures, final)
        return ReadinessProbe(script, policy or fast_policy, "scripted"), script

    return make
