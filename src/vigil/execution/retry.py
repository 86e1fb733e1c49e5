"""Retry Engine - failure classification, exponential backoff and escalation.

Every failed step attempt goes through :meth:`RetryEngine.decide`, which
classifies the error, counts the attempts already recorded for the current
step, and either schedules a retry after ``next_delay`` or escalates. The
decision is written to the retry log *before* the caller starts waiting, so a
crash mid-backoff never loses the attempt count.

Attempt numbering: attempt 0 is the original run of a step; ``max_attempts``
counts the retries after it. With ``max_attempts=3`` a step runs at most four
times, waiting ``next_delay(0)``, ``next_delay(1)``, ``next_delay(2)`` between
them.

Example:
    >>> policy = RetryPolicy(max_attempts=3, initial_delay=1, backoff_factor=2, max_delay=10, jitter=False)
    >>> [next_delay(n, policy) for n in range(5)]
    [1.0, 2.0, 4.0, 8.0, 10.0]
    >>> should_retry(2, policy), should_retry(3, policy)
    (True, False)
"""

from __future__ import annotations

import random
import re
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from vigil.core.errors import VigilError, categorize_error, get_retry_after, is_retryable
from vigil.core.logging import get_logger
from vigil.core.models import ErrorClass, RetryAction, RetryRecord, Task
from vigil.core.timestamps import utc_now

logger = get_logger(__name__)

Classifier = Callable[[BaseException], "ErrorClass | bool"]


class RetryPolicy(BaseModel):
    """Backoff and budget settings.

    Attributes:
        max_attempts: Retries allowed per step after the original attempt
        initial_delay: Delay in seconds before the first retry
        backoff_factor: Exponential multiplier
        max_delay: Delay cap in seconds
        jitter: Add bounded randomness to each delay
        jitter_range: Jitter as a fraction of the delay (0.2 = ±20%)
        max_total_retries: Retry budget across all steps of a task (None = unlimited)
        pressure_attempt_divisor: ``max_attempts`` is divided by this under resource pressure
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_attempts: int = Field(default=3, ge=0)
    initial_delay: float = Field(default=30.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    max_delay: float = Field(default=1800.0, ge=0)
    jitter: bool = True
    jitter_range: float = Field(default=0.2, ge=0.0, le=1.0)
    max_total_retries: int | None = Field(default=10, ge=0)
    pressure_attempt_divisor: int = Field(default=2, ge=1)

    def under_pressure(self) -> RetryPolicy:
        """Policy with the per-step budget lowered (never below one retry)."""
        lowered = max(1, self.max_attempts // self.pressure_attempt_divisor)
        return self.model_copy(update={"max_attempts": min(self.max_attempts, lowered)})


def next_delay(attempt: int, policy: RetryPolicy, rng: random.Random | None = None) -> float:
    """Delay in seconds before retrying after failed attempt *attempt*.

    ``min(max_delay, initial_delay * backoff_factor ** attempt)``, then
    optional jitter within ``±jitter_range`` (still capped, never negative).
    """
    try:
        raw = policy.initial_delay * (policy.backoff_factor ** attempt)
    except OverflowError:
        raw = policy.max_delay
    delay = float(min(policy.max_delay, raw))

    if policy.jitter and delay > 0:
        jitter_amount = delay * policy.jitter_range
        delay += (rng or random).uniform(-jitter_amount, jitter_amount)
        delay = min(policy.max_delay, max(0.0, delay))

    return delay


def should_retry(
    attempt: int,
    policy: RetryPolicy,
    error_class: ErrorClass = ErrorClass.TRANSIENT,
) -> bool:
    """True iff the error is transient and *attempt* is below ``max_attempts``."""
    return error_class is ErrorClass.TRANSIENT and attempt < policy.max_attempts


# =============================================================================
# CLASSIFICATION
# =============================================================================

_TRANSIENT_PATTERNS = (
    re.compile(r"\bapi\b|rate.?limit|quota|too many requests", re.IGNORECASE),
    re.compile(r"time.?out|timed out", re.IGNORECASE),
    re.compile(r"network|connection|\bdns\b|temporarily unavailable", re.IGNORECASE),
)

_FATAL_PATTERNS = (
    re.compile(r"permission|denied|unauthori[sz]ed|forbidden", re.IGNORECASE),
    re.compile(r"invalid|syntax|malformed", re.IGNORECASE),
    re.compile(r"\bconfig", re.IGNORECASE),
)


def default_classifier(error: BaseException) -> ErrorClass:
    """Classify by type first, then by message keywords.

    Typed errors win: a :class:`VigilError` knows whether it is retryable,
    and builtin timeouts and connection errors are transient. Anything else
    is judged by its message; an unrecognised message is treated as
    transient so that an unknown hiccup gets its bounded retries.
    """
    if is_retryable(error):
        return ErrorClass.TRANSIENT
    if isinstance(error, VigilError):
        return ErrorClass.FATAL
    if isinstance(error, PermissionError):
        return ErrorClass.FATAL

    message = f"{type(error).__name__}: {error}"
    if any(p.search(message) for p in _TRANSIENT_PATTERNS):
        return ErrorClass.TRANSIENT
    if any(p.search(message) for p in _FATAL_PATTERNS):
        return ErrorClass.FATAL
    return ErrorClass.TRANSIENT


# =============================================================================
# ENGINE
# =============================================================================


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of :meth:`RetryEngine.decide`."""

    action: RetryAction
    error_class: ErrorClass
    attempt_number: int
    delay_seconds: float
    reason: str
    record: RetryRecord

    @property
    def should_retry(self) -> bool:
        return self.action is RetryAction.RETRY


class RetryEngine:
    """Decides retry vs. escalate from the durable retry history.

    Args:
        store: Anything with ``append_retry`` / ``read_retries`` (the state store)
        policy: Backoff and budget settings
        classifier: Job-supplied predicate; may return an :class:`ErrorClass`
            or a bool (True = transient)
        rng: Random source for jitter (inject a seeded one for tests)
    """

    def __init__(
        self,
        store: Any,
        policy: RetryPolicy | None = None,
        *,
        classifier: Classifier | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.policy = policy or RetryPolicy()
        self._classifier = classifier or default_classifier
        self._rng = rng
        self._clock = clock

    def classify(self, error: BaseException) -> ErrorClass:
        verdict = self._classifier(error)
        if isinstance(verdict, ErrorClass):
            return verdict
        return ErrorClass.TRANSIENT if verdict else ErrorClass.FATAL

    def attempts_so_far(self, task: Task) -> int:
        """Failed attempts recorded for the task's current step since it was entered."""
        return len(
            self.store.read_retries(
                task.id, step_index=task.current_step_index, since=task.step_started_at
            )
        )

    def total_retries(self, task_id: str) -> int:
        return sum(
            1 for r in self.store.read_retries(task_id) if r.decision is RetryAction.RETRY
        )

    def decide(self, task: Task, error: BaseException, *, under_pressure: bool = False) -> RetryDecision:
        """Classify *error*, pick retry or escalate, and persist the RetryRecord."""
        policy = self.policy.under_pressure() if under_pressure else self.policy
        error_class = self.classify(error)
        attempt = self.attempts_so_far(task)

        if error_class is ErrorClass.FATAL:
            action, reason = RetryAction.ESCALATE, "fatal_error"
        elif not should_retry(attempt, policy, error_class):
            action, reason = RetryAction.ESCALATE, "retry_budget_exhausted"
        elif policy.max_total_retries is not None and self.total_retries(task.id) >= policy.max_total_retries:
            action, reason = RetryAction.ESCALATE, "total_retry_budget_exhausted"
        else:
            action, reason = RetryAction.RETRY, "transient_error"

        delay = 0.0
        if action is RetryAction.RETRY:
            delay = next_delay(attempt, policy, self._rng)
            # A server-supplied hint (rate limits) wins over backoff, within the cap.
            retry_after = get_retry_after(error)
            if retry_after:
                delay = min(policy.max_delay, max(delay, float(retry_after)))
        record = RetryRecord(
            task_id=task.id,
            step_index=task.current_step_index,
            attempt_number=attempt,
            error_class=error_class,
            error_summary=summarize_error(error),
            delay_before_ms=int(round(delay * 1000)),
            decision=action,
            timestamp=self._clock(),
            error_category=categorize_error(error).value,
        )
        self.store.append_retry(record)

        logger.info(
            "retry_decided",
            task_id=task.id,
            step_index=task.current_step_index,
            attempt=attempt,
            error_class=error_class.value,
            action=action.value,
            reason=reason,
            delay_seconds=round(delay, 3),
            under_pressure=under_pressure,
        )
        return RetryDecision(
            action=action,
            error_class=error_class,
            attempt_number=attempt,
            delay_seconds=delay,
            reason=reason,
            record=record,
        )

    def stats(self, task: Task) -> dict[str, Any]:
        """Retry totals, per-step counts and budget use for *task*."""
        records = self.store.read_retries(task.id)
        retries = [r for r in records if r.decision is RetryAction.RETRY]
        per_step = Counter(r.step_index for r in records)
        by_class = Counter(r.error_class.value for r in records)
        current = self.attempts_so_far(task)
        return {
            "task_id": task.id,
            "total_failures": len(records),
            "total_retries": len(retries),
            "escalations": len(records) - len(retries),
            "max_total_retries": self.policy.max_total_retries,
            "failures_per_step": dict(sorted(per_step.items())),
            "failures_by_class": dict(by_class),
            "current_step": task.current_step_index,
            "current_step_attempts": current,
            "current_step_remaining": max(0, self.policy.max_attempts - current),
            "last_error": records[-1].error_summary if records else None,
        }


def summarize_error(error: BaseException, limit: int = 500) -> str:
    """One-line ``Type: message`` summary, truncated to *limit* chars."""
    text = f"{type(error).__name__}: {error}".replace("\n", " ").strip()
    return text if len(text) <= limit else text[: limit - 3] + "..."
