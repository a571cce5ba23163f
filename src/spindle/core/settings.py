"""Runtime settings for Spindle.

All tunables of the orchestrator are read from ``SPINDLE_*`` environment
variables (or a ``.env`` file) and validated by pydantic at startup.

Examples:
    >>> import os
    >>> os.environ["SPINDLE_PROBE_INTERVAL_SECONDS"] = "0.5"
    >>> reset_settings()
    >>> get_settings().probe_interval_seconds
    0.5

Fields
──────
log_level                   : Structlog log level
log_json                    : JSON logs (None = auto-detect from tty)
work_dir                    : Parent directory for execution context roots
volumes_dir                 : Directory holding one sub-directory per named volume
inherit_env                 : Child processes inherit the supervisor environment
kill_timeout_seconds        : SIGTERM → SIGKILL grace period
probe_interval_seconds      : Default readiness poll interval
probe_deadline_seconds      : Default readiness deadline
bootstrap_deadline_seconds  : Default wall-clock deadline of a bootstrap run
rebuild_coalesce_seconds    : Window in which reactive notifications coalesce
config_poll_seconds         : File-backed configuration store poll interval
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SpindleSettings(BaseSettings):
    """Settings shared by the scheduler, context manager and supervisor."""

    model_config = SettingsConfigDict(
        env_prefix="SPINDLE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    # ── Filesystem ───────────────────────────────────────────────
    work_dir: Path = Field(
        default_factory=lambda: Path.home() / ".spindle" / "contexts",
        description="Parent directory for execution context roots",
    )
    volumes_dir: Path = Field(
        default_factory=lambda: Path.home() / ".spindle" / "volumes",
        description="One sub-directory per named volume",
    )

    # ── Processes ────────────────────────────────────────────────
    inherit_env: bool = True
    kill_timeout_seconds: float = Field(default=5.0, gt=0)

    # ── Readiness / deadlines ────────────────────────────────────
    probe_interval_seconds: float = Field(default=1.0, gt=0)
    probe_deadline_seconds: float = Field(default=10.0, gt=0)
    bootstrap_deadline_seconds: float = Field(default=120.0, gt=0)

    # ── Reactive rebuilds ────────────────────────────────────────
    rebuild_coalesce_seconds: float = Field(default=0.25, ge=0)
    config_poll_seconds: float = Field(default=1.0, gt=0)


@lru_cache(maxsize=1)
def get_settings() -> SpindleSettings:
    """Return the process-wide settings (read once)."""
    return SpindleSettings()


def reset_settings() -> None:
    """Forget cached settings so the next ``get_settings()`` re-reads the environment."""
    get_settings.cache_clear()


__all__ = ["SpindleSettings", "get_settings", "reset_settings"]
