"""
Operation result envelope.

Every function in :mod:`vigil.ops` returns an :class:`OperationResult`. The
CLI renders it and derives the process exit code from it. Typed
:class:`~vigil.core.errors.VigilError` failures are folded into an
:class:`OperationError` by :meth:`OperationResult.from_error`; anything else
propagates.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, TypeVar

from vigil.core.errors import (
    ConfigError,
    ErrorCategory,
    RecoveryError,
    StateCorruptError,
    StateStoreError,
    TaskConflictError,
    VigilError,
)

T = TypeVar("T")

# Most specific first: StateCorruptError subclasses StateStoreError.
_ERROR_CODES: tuple[tuple[type[VigilError], str], ...] = (
    (StateCorruptError, "STATE_CORRUPT"),
    (StateStoreError, "STATE_STORE"),
    (ConfigError, "CONFIG"),
    (TaskConflictError, "CONFLICT"),
    (RecoveryError, "RECOVERY"),
)


def error_code(error: VigilError) -> str:
    """Machine-readable code for a typed error, falling back to its category."""
    for error_type, code in _ERROR_CODES:
        if isinstance(error, error_type):
            return code
    return error.category.value.upper()


@dataclass(frozen=True, slots=True)
class OperationError:
    """Why an operation failed.

    ``code`` is what scripts match on (``STATE_CORRUPT``, ``NOT_FOUND``);
    ``details`` carries the error context (task id, path).
    """

    code: str
    message: str
    category: ErrorCategory | None = None
    details: dict[str, Any] = field(default_factory=dict)
    retryable: bool = False

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"code": self.code, "message": self.message, "retryable": self.retryable}
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class OperationResult[T]:
    """Success/failure envelope.

    Build with :meth:`ok`, :meth:`fail` or :meth:`from_error`. ``exit_code``
    is set by operations that decide one themselves (run, recovery); when it
    is ``None`` the CLI derives it from ``success`` and the error code.
    ``warnings`` are non-fatal notes the CLI prints to stderr.
    """

    success: bool
    data: T | None = None
    error: OperationError | None = None
    warnings: list[str] = field(default_factory=list)
    elapsed_ms: float = 0.0
    exit_code: int | None = None

    @classmethod
    def ok(
        cls,
        data: T,
        *,
        warnings: list[str] | None = None,
        elapsed_ms: float = 0.0,
        exit_code: int | None = None,
    ) -> OperationResult[T]:
        return cls(success=True, data=data, warnings=warnings or [], elapsed_ms=elapsed_ms, exit_code=exit_code)

    @classmethod
    def fail(
        cls,
        code: str,
        message: str,
        *,
        category: ErrorCategory | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
        elapsed_ms: float = 0.0,
    ) -> OperationResult[T]:
        error = OperationError(code, message, category, details or {}, retryable)
        return cls(success=False, error=error, elapsed_ms=elapsed_ms)

    @classmethod
    def from_error(cls, error: VigilError, *, elapsed_ms: float = 0.0) -> OperationResult[T]:
        return cls.fail(
            error_code(error),
            error.message,
            category=error.category,
            details=error.context.to_dict(),
            retryable=error.retryable,
            elapsed_ms=elapsed_ms,
        )

    def to_dict(self) -> dict[str, Any]:
        """Plain dict for ``--json`` output; empty fields are left out."""
        d: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            d["data"] = self.data
        if self.error is not None:
            d["error"] = self.error.to_dict()
        if self.warnings:
            d["warnings"] = self.warnings
        if self.elapsed_ms:
            d["elapsed_ms"] = round(self.elapsed_ms, 2)
        if self.exit_code is not None:
            d["exit_code"] = self.exit_code
        return d


@dataclass
class PagedResult(OperationResult[list[T]]):
    """One page of a list operation."""

    total: int = 0
    limit: int = 50
    offset: int = 0

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total

    @classmethod
    def from_items(
        cls,
        items: list[T],
        total: int,
        *,
        limit: int = 50,
        offset: int = 0,
        elapsed_ms: float = 0.0,
    ) -> PagedResult[T]:
        return cls(success=True, data=items, total=total, limit=limit, offset=offset, elapsed_ms=elapsed_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
            "has_more": self.has_more,
        }


class Stopwatch:
    """Wall-clock timer for an operation; read ``elapsed_ms`` when done."""

    __slots__ = ("_started",)

    def __init__(self) -> None:
        self._started = time.perf_counter()

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self._started) * 1000


def start_timer() -> Stopwatch:
    return Stopwatch()
