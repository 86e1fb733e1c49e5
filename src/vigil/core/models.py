"""Persistent records for a supervised run.

Every record here is a plain dataclass with ``to_dict()`` / ``from_dict()``
so it can be written as JSON by the state store and read back by any of the
three processes (orchestrator, health monitor, recovery controller) without
sharing memory.

Records:
    - :class:`Task`          one supervised job; the only mutable record
    - :class:`Checkpoint`    immutable recovery point (step N completed)
    - :class:`RetryRecord`   one failed attempt and the decision taken
    - :class:`HealthSnapshot` one monitor sample (never authoritative)
    - :class:`Alert`         signal for human attention
    - :class:`LogEntry`      one execution-log line

Task status graph::

    PLANNING      → RUNNING | ABORTED
    RUNNING       → RETRY_PENDING | PAUSED | COMPLETED | ABORTED
    RETRY_PENDING → RUNNING | PAUSED | ABORTED
    PAUSED        → RECOVERING | ABORTED
    RECOVERING    → RUNNING | PAUSED | ABORTED
    COMPLETED     → (terminal)
    ABORTED       → (terminal)
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from vigil.core.errors import InvalidTransitionError
from vigil.core.timestamps import from_iso8601, generate_ulid, to_iso8601, utc_now


class TaskStatus(str, Enum):
    """Lifecycle status of a supervised task."""

    PLANNING = "planning"
    RUNNING = "running"
    RETRY_PENDING = "retry_pending"
    RECOVERING = "recovering"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.ABORTED)


TASK_VALID_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PLANNING: frozenset({
        TaskStatus.RUNNING,
        TaskStatus.ABORTED,
    }),
    TaskStatus.RUNNING: frozenset({
        TaskStatus.RETRY_PENDING,
        TaskStatus.PAUSED,
        TaskStatus.COMPLETED,
        TaskStatus.ABORTED,
    }),
    TaskStatus.RETRY_PENDING: frozenset({
        TaskStatus.RUNNING,
        TaskStatus.PAUSED,
        TaskStatus.ABORTED,
    }),
    TaskStatus.PAUSED: frozenset({
        TaskStatus.RECOVERING,
        TaskStatus.ABORTED,
    }),
    TaskStatus.RECOVERING: frozenset({
        TaskStatus.RUNNING,
        TaskStatus.PAUSED,
        TaskStatus.ABORTED,
    }),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.ABORTED: frozenset(),
}


def validate_task_transition(current: TaskStatus, target: TaskStatus) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal.

    Example:
        >>> validate_task_transition(TaskStatus.RUNNING, TaskStatus.PAUSED)
        >>> validate_task_transition(TaskStatus.COMPLETED, TaskStatus.RUNNING)
        InvalidTransitionError: Invalid TaskStatus transition: completed → running
    """
    allowed = TASK_VALID_TRANSITIONS.get(current, frozenset())
    if target not in allowed:
        raise InvalidTransitionError(current.value, target.value)


class PauseReason(str, Enum):
    """Why a task stopped in ``paused``; decides which recoveries are allowed."""

    RETRY_EXHAUSTED = "retry_exhausted"
    FATAL_ERROR = "fatal_error"
    INTEGRITY_FAILURE = "integrity_failure"
    RECOVERY_INTERRUPTED = "recovery_interrupted"


class ErrorClass(str, Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"


class RetryAction(str, Enum):
    RETRY = "retry"
    ESCALATE = "escalate"


class AlertSeverity(str, Enum):
    """Alert severity, ordered info < warning < critical."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {AlertSeverity.INFO: 0, AlertSeverity.WARNING: 1, AlertSeverity.CRITICAL: 2}


def _dt(value: str | None) -> datetime | None:
    return from_iso8601(value)


# =============================================================================
# TASK
# =============================================================================


@dataclass
class Task:
    """One supervised long-running job.

    ``step_started_at`` marks when ``current_step_index`` was last entered
    (first attempt, step advance, or restore); retry attempts for the
    current step are the retry records newer than it.
    """

    id: str
    plan_reference: str
    status: TaskStatus = TaskStatus.PLANNING
    current_step_index: int = 0
    total_steps: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    step_started_at: datetime = field(default_factory=utc_now)
    last_heartbeat_at: datetime | None = None
    pause_reason: PauseReason | None = None
    last_checkpoint_id: str | None = None
    restored_from: str | None = None
    last_error: str | None = None

    @classmethod
    def create(cls, plan_reference: str, total_steps: int) -> Task:
        now = utc_now()
        return cls(
            id=generate_ulid(),
            plan_reference=plan_reference,
            total_steps=total_steps,
            created_at=now,
            updated_at=now,
            step_started_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def progress_ratio(self) -> float:
        """Fraction of steps completed (0.0 - 1.0)."""
        if self.total_steps <= 0:
            return 0.0
        return min(1.0, self.current_step_index / self.total_steps)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "plan_reference": self.plan_reference,
            "status": self.status.value,
            "current_step_index": self.current_step_index,
            "total_steps": self.total_steps,
            "created_at": to_iso8601(self.created_at),
            "updated_at": to_iso8601(self.updated_at),
            "step_started_at": to_iso8601(self.step_started_at),
            "last_heartbeat_at": to_iso8601(self.last_heartbeat_at),
            "pause_reason": self.pause_reason.value if self.pause_reason else None,
            "last_checkpoint_id": self.last_checkpoint_id,
            "restored_from": self.restored_from,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        return cls(
            id=data["id"],
            plan_reference=data["plan_reference"],
            status=TaskStatus(data["status"]),
            current_step_index=int(data["current_step_index"]),
            total_steps=int(data.get("total_steps", 0)),
            created_at=_dt(data["created_at"]),
            updated_at=_dt(data.get("updated_at")) or _dt(data["created_at"]),
            step_started_at=_dt(data.get("step_started_at")) or _dt(data["created_at"]),
            last_heartbeat_at=_dt(data.get("last_heartbeat_at")),
            pause_reason=PauseReason(data["pause_reason"]) if data.get("pause_reason") else None,
            last_checkpoint_id=data.get("last_checkpoint_id"),
            restored_from=data.get("restored_from"),
            last_error=data.get("last_error"),
        )


# =============================================================================
# CHECKPOINT
# =============================================================================


@dataclass(frozen=True)
class Checkpoint:
    """Immutable recovery point recording that ``step_index`` completed.

    ``context_blob`` is canonical JSON of ``{"context": ..., "artifacts": [...]}``
    and ``integrity_hash`` is its SHA-256.
    """

    checkpoint_id: str
    task_id: str
    step_index: int
    sequence: int
    created_at: datetime
    context_blob: str
    integrity_hash: str
    artifacts: tuple[str, ...] = ()

    @property
    def resume_step(self) -> int:
        """Step index execution continues from after restoring this checkpoint."""
        return self.step_index + 1

    @property
    def context(self) -> Any:
        """Decoded step context (raises ``ValueError`` if the blob is damaged)."""
        return json.loads(self.context_blob).get("context")

    def to_dict(self) -> dict[str, Any]:
        return {
            "checkpoint_id": self.checkpoint_id,
            "task_id": self.task_id,
            "step_index": self.step_index,
            "sequence": self.sequence,
            "created_at": to_iso8601(self.created_at),
            "context_blob": self.context_blob,
            "integrity_hash": self.integrity_hash,
            "artifacts": list(self.artifacts),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        return cls(
            checkpoint_id=data["checkpoint_id"],
            task_id=data["task_id"],
            step_index=int(data["step_index"]),
            sequence=int(data["sequence"]),
            created_at=_dt(data["created_at"]),
            context_blob=data["context_blob"],
            integrity_hash=data["integrity_hash"],
            artifacts=tuple(data.get("artifacts") or ()),
        )


# =============================================================================
# RETRY RECORD
# =============================================================================


@dataclass(frozen=True)
class RetryRecord:
    """One failed attempt of a step and the decision taken for it.

    ``attempt_number`` is the attempt that failed (0 = the original run).
    ``error_category`` is the coarse kind of failure (network, timeout, auth)
    used when looking for patterns across recent failures.
    """

    task_id: str
    step_index: int
    attempt_number: int
    error_class: ErrorClass
    error_summary: str
    delay_before_ms: int
    decision: RetryAction
    timestamp: datetime = field(default_factory=utc_now)
    error_category: str = "UNKNOWN"

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "step_index": self.step_index,
            "attempt_number": self.attempt_number,
            "error_class": self.error_class.value,
            "error_category": self.error_category,
            "error_summary": self.error_summary,
            "delay_before_ms": self.delay_before_ms,
            "decision": self.decision.value,
            "timestamp": to_iso8601(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryRecord:
        return cls(
            task_id=data["task_id"],
            step_index=int(data["step_index"]),
            attempt_number=int(data["attempt_number"]),
            error_class=ErrorClass(data["error_class"]),
            error_summary=data.get("error_summary", ""),
            delay_before_ms=int(data.get("delay_before_ms", 0)),
            decision=RetryAction(data.get("decision", RetryAction.RETRY.value)),
            timestamp=_dt(data["timestamp"]),
            error_category=data.get("error_category", "UNKNOWN"),
        )


# =============================================================================
# HEALTH SNAPSHOT
# =============================================================================


@dataclass(frozen=True)
class HealthSnapshot:
    """One monitor sample. Used for trends and retry tuning, never for status."""

    timestamp: datetime
    cpu_load: float | None
    memory_pressure: float | None
    disk_free_ratio: float | None
    seconds_since_heartbeat: float | None
    consecutive_transient_failures: int
    resource_pressure: bool = False
    task_status: str | None = None
    step_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": to_iso8601(self.timestamp),
            "cpu_load": self.cpu_load,
            "memory_pressure": self.memory_pressure,
            "disk_free_ratio": self.disk_free_ratio,
            "seconds_since_heartbeat": self.seconds_since_heartbeat,
            "consecutive_transient_failures": self.consecutive_transient_failures,
            "resource_pressure": self.resource_pressure,
            "task_status": self.task_status,
            "step_index": self.step_index,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HealthSnapshot:
        return cls(
            timestamp=_dt(data["timestamp"]),
            cpu_load=data.get("cpu_load"),
            memory_pressure=data.get("memory_pressure"),
            disk_free_ratio=data.get("disk_free_ratio"),
            seconds_since_heartbeat=data.get("seconds_since_heartbeat"),
            consecutive_transient_failures=int(data.get("consecutive_transient_failures", 0)),
            resource_pressure=bool(data.get("resource_pressure", False)),
            task_status=data.get("task_status"),
            step_index=data.get("step_index"),
        )


# =============================================================================
# ALERT
# =============================================================================


@dataclass
class Alert:
    """A derived signal for human attention; only ``acknowledged`` ever changes."""

    severity: AlertSeverity
    message: str
    related_task_id: str | None
    source: str
    related_checkpoint_id: str | None = None
    step_index: int | None = None
    fingerprint: str | None = None
    alert_id: str = field(default_factory=generate_ulid)
    timestamp: datetime = field(default_factory=utc_now)
    acknowledged: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "severity": self.severity.value,
            "message": self.message,
            "related_task_id": self.related_task_id,
            "related_checkpoint_id": self.related_checkpoint_id,
            "step_index": self.step_index,
            "source": self.source,
            "fingerprint": self.fingerprint,
            "timestamp": to_iso8601(self.timestamp),
            "acknowledged": self.acknowledged,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Alert:
        return cls(
            alert_id=data["alert_id"],
            severity=AlertSeverity(data["severity"]),
            message=data["message"],
            related_task_id=data.get("related_task_id"),
            related_checkpoint_id=data.get("related_checkpoint_id"),
            step_index=data.get("step_index"),
            source=data.get("source", "orchestrator"),
            fingerprint=data.get("fingerprint"),
            timestamp=_dt(data["timestamp"]),
            acknowledged=bool(data.get("acknowledged", False)),
        )


# =============================================================================
# EXECUTION LOG
# =============================================================================


@dataclass(frozen=True)
class LogEntry:
    """One line of the append-only execution log."""

    event: str
    task_id: str | None
    status: str | None = None
    step_index: int | None = None
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": to_iso8601(self.timestamp),
            "event": self.event,
            "task_id": self.task_id,
            "status": self.status,
            "step_index": self.step_index,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LogEntry:
        return cls(
            event=data["event"],
            task_id=data.get("task_id"),
            status=data.get("status"),
            step_index=data.get("step_index"),
            details=data.get("details") or {},
            timestamp=_dt(data["timestamp"]),
        )
