"""
Structured error types for vigil.

Provides a typed error hierarchy with metadata for retry decisions, alerting
and recovery. Every failure that crosses a component boundary in vigil is a
``VigilError`` (or is classified into one) so the orchestrator can decide
between retry, pause, and abort without string matching at call sites.

Manifesto:
    A supervised job runs unattended for a day or more. Silent failure is
    worse than a loud pause, so errors must say what they are:

    - **Typed hierarchy:** transient vs. fatal vs. storage vs. integrity
    - **Explicit retry semantics:** each error knows if it is retryable
    - **Rich context:** task id, step index, checkpoint id travel with it
    - **Chaining:** the original exception is preserved as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                        VigilError                                │
        │  (category, retryable, retry_after, context, cause)             │
        ├─────────────────────────────────────────────────────────────────┤
        │  TransientError        FatalStepError       StateStoreError      │
        │  (retryable=True)      (retryable=False)    (STORAGE)            │
        │       │                     │                    │               │
        │  NetworkError          ValidationError      StateCorruptError    │
        │  StepTimeoutError      AuthError                                 │
        │  RateLimitError        ConfigError                               │
        │                                                                  │
        │  CheckpointIntegrityError   RecoveryError   InvalidTransitionError│
        │  NoValidCheckpointError                                          │
        └─────────────────────────────────────────────────────────────────┘

Tags:
    errors, exceptions, retry-logic, vigil

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

import builtins
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """
    Standard error categories for classification and routing.

    Categories are grouped by their typical retry behavior:
    - **Infrastructure (usually transient):** NETWORK, TIMEOUT, RATE_LIMIT
    - **Input/credentials (never retryable):** VALIDATION, AUTH, CONFIG
    - **Supervisor internals:** STORAGE, INTEGRITY, ORCHESTRATION
    - **Other:** STEP, UNKNOWN
    """

    # Infrastructure errors (usually transient)
    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"

    # Input / credentials (never retryable)
    VALIDATION = "VALIDATION"
    AUTH = "AUTH"
    CONFIG = "CONFIG"

    # Supervisor internals
    STORAGE = "STORAGE"
    INTEGRITY = "INTEGRITY"
    ORCHESTRATION = "ORCHESTRATION"

    # Job errors
    STEP = "STEP"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """Structured metadata attached to a :class:`VigilError`."""

    task_id: str | None = None
    step_index: int | None = None
    step_name: str | None = None
    checkpoint_id: str | None = None
    path: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, dropping empty fields."""
        result: dict[str, Any] = {}
        for key in ("task_id", "step_index", "step_name", "checkpoint_id", "path"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result["metadata"] = dict(self.metadata)
        return result


class VigilError(Exception):
    """
    Base exception for all vigil errors.

    Every instance carries:
    - **category:** ErrorCategory for classification and alert routing
    - **retryable:** whether the Retry Engine may re-attempt the step
    - **retry_after:** optional seconds the upstream asked us to wait
    - **context:** ErrorContext with task/step/checkpoint metadata
    - **cause:** underlying exception, also chained as ``__cause__``

    Subclasses set ``default_category`` and ``default_retryable``.

    Examples:
        >>> error = VigilError("Something went wrong")
        >>> error.retryable
        False
        >>> error = TransientError("upstream 503", retry_after=30)
        >>> error.retryable, error.retry_after
        (True, 30)
    """

    default_category: ErrorCategory = ErrorCategory.UNKNOWN
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: int | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> VigilError:
        """
        Add context to this error (fluent API).

        Usage:
            raise StateCorruptError("bad json").with_context(path=str(status_path))
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS (retryable)
# =============================================================================


class TransientError(VigilError):
    """
    Temporary error that may succeed on retry.

    Use when the same step, re-attempted after a delay, has a reasonable
    chance of succeeding: timeouts, rate limits, connection resets.
    """

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class NetworkError(TransientError):
    """Connectivity reset, DNS failure, refused connection."""

    default_category = ErrorCategory.NETWORK


class StepTimeoutError(TransientError):
    """A step exceeded its caller-supplied timeout."""

    default_category = ErrorCategory.TIMEOUT

    def __init__(
        self,
        message: str,
        *,
        timeout: float | None = None,
        elapsed: float | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.timeout = timeout
        self.elapsed = elapsed


class RateLimitError(TransientError):
    """Upstream rate limit or quota exceeded."""

    default_category = ErrorCategory.RATE_LIMIT

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        retry_after: int = 60,
        **kwargs: Any,
    ):
        super().__init__(message, retry_after=retry_after, **kwargs)


# =============================================================================
# FATAL ERRORS (never retryable)
# =============================================================================


class FatalStepError(VigilError):
    """A step failure the job explicitly marks as non-retryable."""

    default_category = ErrorCategory.STEP
    default_retryable = False


class ValidationError(FatalStepError):
    """Bad input to a step; retrying cannot help."""

    default_category = ErrorCategory.VALIDATION


class AuthError(FatalStepError):
    """Authentication or authorization failure."""

    default_category = ErrorCategory.AUTH


class ConfigError(VigilError):
    """Missing or invalid configuration (settings or plan file)."""

    default_category = ErrorCategory.CONFIG


# =============================================================================
# SUPERVISOR ERRORS
# =============================================================================


class StateStoreError(VigilError):
    """The state store could not be read or written.

    Always critical: the orchestrator halts instead of guessing at state.
    """

    default_category = ErrorCategory.STORAGE


class StateCorruptError(StateStoreError):
    """The status record exists but cannot be parsed.

    Never answered by reinitialising the store; that would erase the
    recovery trail.
    """


class CheckpointIntegrityError(VigilError):
    """A checkpoint failed hash or artifact verification."""

    default_category = ErrorCategory.INTEGRITY


class NoValidCheckpointError(CheckpointIntegrityError):
    """No checkpoint for the task verifies; recovery is impossible."""


class RecoveryError(VigilError):
    """A recovery operation was refused or could not complete."""

    default_category = ErrorCategory.ORCHESTRATION


class TaskConflictError(VigilError):
    """A non-terminal task already occupies the state directory."""

    default_category = ErrorCategory.ORCHESTRATION


class InvalidTransitionError(VigilError, ValueError):
    """Raised when an illegal task status transition is attempted.

    Transition validation is strict. A legitimate transition that is
    blocked belongs in ``TASK_VALID_TRANSITIONS``; never remove the guard.
    """

    default_category = ErrorCategory.ORCHESTRATION

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Invalid TaskStatus transition: {current} → {target}")


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable by type alone."""
    if isinstance(error, VigilError):
        return error.retryable
    return isinstance(
        error,
        (
            builtins.TimeoutError,
            ConnectionError,
            BrokenPipeError,
        ),
    )


def get_retry_after(error: BaseException) -> int | None:
    """Get retry delay from error, if specified."""
    if isinstance(error, VigilError):
        return error.retry_after
    return None


def categorize_error(error: BaseException) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, VigilError):
        return error.category
    if isinstance(error, builtins.TimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(error, ConnectionError):
        return ErrorCategory.NETWORK
    if isinstance(error, PermissionError):
        return ErrorCategory.AUTH
    if isinstance(error, ValueError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "VigilError",
    "TransientError",
    "NetworkError",
    "StepTimeoutError",
    "RateLimitError",
    "FatalStepError",
    "ValidationError",
    "AuthError",
    "ConfigError",
    "StateStoreError",
    "StateCorruptError",
    "CheckpointIntegrityError",
    "NoValidCheckpointError",
    "RecoveryError",
    "TaskConflictError",
    "InvalidTransitionError",
    "is_retryable",
    "get_retry_after",
    "categorize_error",
]
