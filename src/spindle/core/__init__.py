"""Core primitives: errors, structured logging, settings."""

from spindle.core.errors import (
    BackendError,
    ConfigError,
    ErrorCategory,
    ErrorContext,
    OrchestrationError,
    SpindleError,
)
from spindle.core.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)
from spindle.core.settings import SpindleSettings, get_settings, reset_settings

__all__ = [
    "BackendError",
    "ConfigError",
    "ErrorCategory",
    "ErrorContext",
    "OrchestrationError",
    "SpindleError",
    "LogContext",
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
    "unbind_context",
    "SpindleSettings",
    "get_settings",
    "reset_settings",
]
