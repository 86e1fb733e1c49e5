"""Tests for vigil.core.models - records and the task state machine."""

from datetime import UTC, datetime

import pytest

from vigil.core.errors import InvalidTransitionError
from vigil.core.hashing import canonical_json, sha256_hex
from vigil.core.models import (
    TASK_VALID_TRANSITIONS,
    Alert,
    AlertSeverity,
    Checkpoint,
    ErrorClass,
    HealthSnapshot,
    LogEntry,
    PauseReason,
    RetryAction,
    RetryRecord,
    Task,
    TaskStatus,
    validate_task_transition,
)

T0 = datetime(2026, 3, 1, 12, 0, 0, 250000, tzinfo=UTC)


# =============================================================================
# State machine
# =============================================================================


class TestTaskTransitions:
    """The status graph is enforced, not advisory."""

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (TaskStatus.PLANNING, TaskStatus.RUNNING),
            (TaskStatus.RUNNING, TaskStatus.RETRY_PENDING),
            (TaskStatus.RETRY_PENDING, TaskStatus.RUNNING),
            (TaskStatus.RUNNING, TaskStatus.PAUSED),
            (TaskStatus.PAUSED, TaskStatus.RECOVERING),
            (TaskStatus.RECOVERING, TaskStatus.RUNNING),
            (TaskStatus.RECOVERING, TaskStatus.PAUSED),
            (TaskStatus.RUNNING, TaskStatus.COMPLETED),
            (TaskStatus.PAUSED, TaskStatus.ABORTED),
        ],
    )
    def test_allowed(self, current, target):
        validate_task_transition(current, target)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (TaskStatus.PAUSED, TaskStatus.RUNNING),
            (TaskStatus.PLANNING, TaskStatus.PAUSED),
            (TaskStatus.RETRY_PENDING, TaskStatus.COMPLETED),
            (TaskStatus.COMPLETED, TaskStatus.RUNNING),
            (TaskStatus.ABORTED, TaskStatus.RECOVERING),
        ],
    )
    def test_rejected(self, current, target):
        with pytest.raises(InvalidTransitionError):
            validate_task_transition(current, target)

    def test_terminal_states_have_no_exits(self):
        for status in TaskStatus:
            if status.is_terminal:
                assert TASK_VALID_TRANSITIONS[status] == frozenset()

    def test_paused_never_goes_straight_to_running(self):
        """Leaving paused always passes through a recovery."""
        assert TaskStatus.RUNNING not in TASK_VALID_TRANSITIONS[TaskStatus.PAUSED]


# =============================================================================
# Records
# =============================================================================


class TestTask:
    def test_create(self):
        task = Task.create("plan.yaml", total_steps=4)
        assert len(task.id) == 26
        assert task.status is TaskStatus.PLANNING
        assert task.current_step_index == 0
        assert task.created_at == task.step_started_at

    def test_progress_ratio(self):
        task = Task.create("plan.yaml", total_steps=4)
        task.current_step_index = 1
        assert task.progress_ratio == 0.25
        task.total_steps = 0
        assert task.progress_ratio == 0.0

    def test_round_trip(self):
        task = Task.create("plan.yaml", total_steps=4)
        task.status = TaskStatus.PAUSED
        task.pause_reason = PauseReason.RETRY_EXHAUSTED
        task.last_heartbeat_at = T0
        task.last_error = "ConnectionError: reset"
        restored = Task.from_dict(task.to_dict())
        assert restored == task

    def test_from_dict_tolerates_missing_optional_fields(self):
        task = Task.from_dict(
            {
                "id": "T1",
                "plan_reference": "p",
                "status": "running",
                "current_step_index": 2,
                "created_at": T0.isoformat(),
            }
        )
        assert task.updated_at == T0
        assert task.step_started_at == T0
        assert task.pause_reason is None


class TestCheckpoint:
    def _checkpoint(self) -> Checkpoint:
        blob = canonical_json({"context": {"rows": 10}, "artifacts": ["out.csv"]})
        return Checkpoint(
            checkpoint_id="C1",
            task_id="T1",
            step_index=2,
            sequence=3,
            created_at=T0,
            context_blob=blob,
            integrity_hash=sha256_hex(blob),
            artifacts=("out.csv",),
        )

    def test_resume_step_is_next_step(self):
        assert self._checkpoint().resume_step == 3

    def test_context_decoded_from_blob(self):
        assert self._checkpoint().context == {"rows": 10}

    def test_round_trip(self):
        cp = self._checkpoint()
        assert Checkpoint.from_dict(cp.to_dict()) == cp


class TestRecords:
    def test_retry_record_round_trip(self):
        record = RetryRecord(
            task_id="T1",
            step_index=1,
            attempt_number=0,
            error_class=ErrorClass.TRANSIENT,
            error_summary="ConnectionError: reset",
            delay_before_ms=1000,
            decision=RetryAction.RETRY,
            timestamp=T0,
        )
        assert RetryRecord.from_dict(record.to_dict()) == record

    def test_health_snapshot_round_trip(self):
        snap = HealthSnapshot(
            timestamp=T0,
            cpu_load=0.4,
            memory_pressure=55.0,
            disk_free_ratio=0.3,
            seconds_since_heartbeat=12.0,
            consecutive_transient_failures=1,
            resource_pressure=False,
            task_status="running",
            step_index=2,
        )
        assert HealthSnapshot.from_dict(snap.to_dict()) == snap

    def test_alert_defaults_and_round_trip(self):
        alert = Alert(AlertSeverity.CRITICAL, "paused", "T1", "orchestrator", step_index=0)
        assert alert.acknowledged is False
        assert Alert.from_dict(alert.to_dict()) == alert

    def test_severity_rank(self):
        assert AlertSeverity.INFO.rank < AlertSeverity.WARNING.rank < AlertSeverity.CRITICAL.rank

    def test_log_entry_round_trip(self):
        entry = LogEntry(event="task_paused", task_id="T1", status="paused", step_index=2, details={"reason": "x"}, timestamp=T0)
        assert LogEntry.from_dict(entry.to_dict()) == entry
