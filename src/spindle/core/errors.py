"""
Structured error types for Spindle.

Every error raised by the orchestrator extends ``SpindleError`` so callers can
catch the whole family with one ``except`` clause, and so every failure that
reaches a run status or a log line carries the same metadata:

- **Category:** what kind of failure (validation, mount, execution, probe ...)
- **Retryable:** whether re-running the same pass could plausibly succeed
- **Context:** run id, unit id, context name, dependency service id
- **Cause:** the chained underlying exception

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                        SpindleError                          │
        │        (category, retryable, context, cause)                 │
        ├──────────────────────────────────────────────────────────────┤
        │                                                              │
        │   ConfigError          BackendError        OrchestrationError│
        │   (CONFIG)             (EXECUTION)         (ORCHESTRATION)   │
        │                                                 │            │
        │                          spindle.orchestration.exceptions    │
        │                          GraphError, MountResolutionError,   │
        │                          UnitFailure, BootstrapDeadline...   │
        └──────────────────────────────────────────────────────────────┘

Examples:
    >>> error = SpindleError("boom").with_context(unit_id="db", run_id="r1")
    >>> error.context.unit_id
    'db'
    >>> error.to_dict()["category"]
    'INTERNAL'

Tags:
    error-handling, exception-hierarchy, spindle, observability
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """
    Error categories used for classification, status reporting and logs.

    Static problems (``VALIDATION``, ``CONFIG``) are never retryable: the unit
    set or settings must change. Runtime problems (``EXECUTION``, ``PROBE``,
    ``TIMEOUT``) describe one pass and may succeed on the next rebuild.
    """

    VALIDATION = "VALIDATION"        # Unit graph is invalid
    CONFIG = "CONFIG"                # Manifest or settings invalid
    MOUNT = "MOUNT"                  # Volume / mount resolution
    EXECUTION = "EXECUTION"          # Process exited non-zero, spawn failed
    PROBE = "PROBE"                  # Readiness probe failed
    TIMEOUT = "TIMEOUT"              # Run-level deadline elapsed
    ORCHESTRATION = "ORCHESTRATION"  # Scheduler / supervisor misuse
    INTERNAL = "INTERNAL"            # Bugs, unexpected state


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Only non-None fields are serialised by ``to_dict()``; anything that does
    not fit a typed field goes into ``metadata``.

    Attributes:
        run_id: Orchestration pass the error belongs to
        unit_id: Unit that failed
        context_name: Execution context involved
        service_id: Dependency service involved (dependency volumes, state)
        metadata: Additional key-value pairs
    """

    run_id: str | None = None
    unit_id: str | None = None
    context_name: str | None = None
    service_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["run_id", "unit_id", "context_name", "service_id"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class SpindleError(Exception):
    """
    Base exception for all Spindle errors.

    Subclasses set ``default_category`` and ``default_retryable`` so that the
    common case needs no keyword arguments.

    Examples:
        >>> error = SpindleError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.retryable
        False

        Chaining an underlying exception:

        >>> try:
        ...     raise OSError("disk full")
        ... except OSError as e:
        ...     error = SpindleError("Context root not writable", cause=e)
        >>> error.cause
        OSError('disk full')
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> SpindleError:
        """
        Add context to this error (fluent API).

        Usage:
            raise SpindleError("Failed").with_context(unit_id="db", run_id=run_id)
        """
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(SpindleError):
    """Invalid manifest, unit definition, or settings. Never retryable."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


# =============================================================================
# BACKEND ERRORS
# =============================================================================


class BackendError(SpindleError):
    """
    The process execution backend could not start or control a process.

    ``exit_code`` follows shell conventions where meaningful (127 for a
    command that does not exist).
    """

    default_category = ErrorCategory.EXECUTION
    default_retryable = True

    def __init__(self, message: str, *, exit_code: int | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.exit_code = exit_code


# =============================================================================
# ORCHESTRATION ERRORS
# =============================================================================


class OrchestrationError(SpindleError):
    """Base for every error raised by the orchestrator (graph, run, unit)."""

    default_category = ErrorCategory.ORCHESTRATION
    default_retryable = False


def is_retryable(error: BaseException) -> bool:
    """Return True if ``error`` is a SpindleError marked retryable."""
    return isinstance(error, SpindleError) and error.retryable


__all__ = [
    "BackendError",
    "ConfigError",
    "ErrorCategory",
    "ErrorContext",
    "OrchestrationError",
    "SpindleError",
    "is_retryable",
]
