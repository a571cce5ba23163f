"""Tests for structured logging helpers and settings."""

from __future__ import annotations

from pathlib import Path

import pytest
import structlog

from spindle.core.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)
from spindle.core.settings import SpindleSettings, get_settings, reset_settings


# ── Logging ──────────────────────────────────────────────────────────────


class TestLogContext:
    def test_bind_and_unbind(self):
        bind_context(run_id="run-1", unit_id="db")
        assert structlog.contextvars.get_contextvars() == {"run_id": "run-1", "unit_id": "db"}
        unbind_context("unit_id")
        assert structlog.contextvars.get_contextvars() == {"run_id": "run-1"}
        clear_context()
        assert structlog.contextvars.get_contextvars() == {}

    def test_sync_context_manager(self):
        with LogContext(run_id="run-2"):
            assert structlog.contextvars.get_contextvars()["run_id"] == "run-2"
        assert "run_id" not in structlog.contextvars.get_contextvars()

    @pytest.mark.asyncio
    async def test_async_context_manager(self):
        async with LogContext(unit_id="api"):
            assert structlog.contextvars.get_contextvars()["unit_id"] == "api"
        assert "unit_id" not in structlog.contextvars.get_contextvars()


class TestConfigureLogging:
    def test_json_output_is_ecs_compatible(self, capsys):
        configure_logging(level="INFO", json_format=True, service="unit-test")
        try:
            get_logger("spindle.test").info("scheduler.unit_started", unit_id="db")
            out = capsys.readouterr().out
            assert '"event": "scheduler.unit_started"' in out
            assert '"log.level": "info"' in out
            assert '"service.name": "unit-test"' in out
            assert '"logger": "spindle.test"' in out
            assert "@timestamp" in out
        finally:
            structlog.reset_defaults()

    def test_module_level_logger_picks_up_later_configuration(self, capsys):
        log = get_logger("spindle.early")
        configure_logging(level="INFO", json_format=True)
        try:
            log.info("context.created", context="main")
            out = capsys.readouterr().out
            assert '"logger": "spindle.early"' in out
            assert '"context": "main"' in out
            assert "logger_name" not in out
        finally:
            structlog.reset_defaults()

    def test_level_filters_debug(self, capsys):
        configure_logging(level="WARNING", json_format=True)
        try:
            get_logger().info("dropped")
            get_logger().warning("kept")
            out = capsys.readouterr().out
            assert "dropped" not in out
            assert "kept" in out
        finally:
            structlog.reset_defaults()


# ── Settings ─────────────────────────────────────────────────────────────


class TestSettings:
    def test_defaults(self):
        settings = SpindleSettings()
        assert settings.probe_interval_seconds == 1.0
        assert settings.probe_deadline_seconds == 10.0
        assert settings.bootstrap_deadline_seconds == 120.0
        assert settings.rebuild_coalesce_seconds == 0.25
        assert settings.inherit_env is True
        assert settings.log_json is None

    def test_env_prefix(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SPINDLE_BOOTSTRAP_DEADLINE_SECONDS", "30")
        monkeypatch.setenv("SPINDLE_WORK_DIR", str(tmp_path))
        settings = SpindleSettings()
        assert settings.bootstrap_deadline_seconds == 30.0
        assert settings.work_dir == Path(tmp_path)

    def test_invalid_value_rejected(self, monkeypatch):
        monkeypatch.setenv("SPINDLE_PROBE_INTERVAL_SECONDS", "0")
        with pytest.raises(ValueError):
            SpindleSettings()

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("SPINDLE_LOG_LEVEL", "DEBUG")
        assert get_settings().log_level == "INFO"
        reset_settings()
        assert get_settings().log_level == "DEBUG"
