"""Tests for vigil.recovery.controller.RecoveryController."""

import pytest

from vigil.core.errors import RecoveryError
from vigil.core.models import AlertSeverity, PauseReason, TaskStatus
from vigil.recovery.controller import RecoveryController


@pytest.fixture
def controller(store, checkpoints):
    return RecoveryController(store, checkpoints)


@pytest.fixture
def paused(store, checkpoints, artifact_root, make_task):
    """Task paused at step 2 of 4 with a checkpoint (and artifact) for steps 0 and 1."""

    def _paused(reason=PauseReason.RETRY_EXHAUSTED, *, step=2):
        task = make_task(TaskStatus.PAUSED, step=step, total=4, pause_reason=reason)
        created = []
        for index in range(step):
            artifact = f"step{index}.csv"
            (artifact_root / artifact).write_text(f"rows for {index}\n")
            created.append(checkpoints.create(task.id, index, {"done": index}, artifacts=[artifact]))
        task.last_checkpoint_id = created[-1].checkpoint_id if created else None
        store.write(task)
        return task, created

    return _paused


# =============================================================================
# Read-only
# =============================================================================


class TestVerify:
    def test_report(self, controller, store, paused, artifact_root):
        task, (first, second) = paused()
        (artifact_root / "step1.csv").unlink()

        report = controller.verify()

        assert report.task_id == task.id
        assert [c.checkpoint_id for c in report.valid] == [first.checkpoint_id]
        assert report.invalid[0].reason == "missing_artifact: step1.csv"
        assert report.latest_valid_id == first.checkpoint_id
        assert report.to_dict()["invalid"] == 1

    def test_never_mutates(self, controller, store, paused):
        task, _ = paused()
        controller.verify()
        controller.list_points()
        assert store.read().updated_at == task.updated_at
        assert store.list_backups() == []

    def test_list_points_newest_first(self, controller, paused):
        _, (first, second) = paused()
        assert [p.checkpoint_id for p in controller.list_points()] == [second.checkpoint_id, first.checkpoint_id]


# =============================================================================
# Auto
# =============================================================================


class TestAuto:
    @pytest.mark.parametrize(
        "reason",
        [PauseReason.FATAL_ERROR, PauseReason.INTEGRITY_FAILURE, PauseReason.RECOVERY_INTERRUPTED],
    )
    def test_refused_unless_retry_exhausted(self, controller, store, paused, reason):
        paused(reason)
        with pytest.raises(RecoveryError, match="only allowed after retry exhaustion"):
            controller.auto()
        assert store.read().status is TaskStatus.PAUSED

    def test_refused_when_not_paused(self, controller, make_task):
        make_task(TaskStatus.RUNNING)
        with pytest.raises(RecoveryError, match="not paused"):
            controller.auto()

    def test_restores_latest_valid(self, controller, store, paused):
        task, (_, second) = paused()
        result = controller.auto()

        assert result.success is True
        assert result.exit_code == 0
        assert result.checkpoint_id == second.checkpoint_id
        assert result.resume_step == 2
        restored = store.read()
        assert restored.status is TaskStatus.RUNNING
        assert restored.pause_reason is None
        assert restored.restored_from == second.checkpoint_id
        assert len(store.list_backups()) == 1
        assert [e.event for e in store.read_log(task.id)][-2:] == ["recovery_started", "recovery_completed"]
        [alert] = store.alerts.list()
        assert alert.severity is AlertSeverity.INFO

    def test_skips_invalid_newest(self, controller, store, paused, artifact_root):
        _, (first, _) = paused()
        (artifact_root / "step1.csv").unlink()
        result = controller.auto()
        assert result.checkpoint_id == first.checkpoint_id
        assert store.read().current_step_index == 1

    def test_restarts_when_no_step_completed(self, controller, store, paused):
        paused(step=0)
        result = controller.auto()
        assert result.success is True
        assert result.resume_step == 0
        assert store.read().status is TaskStatus.RUNNING

    def test_aborts_when_nothing_verifies(self, controller, store, paused, artifact_root):
        paused()
        for artifact in artifact_root.iterdir():
            artifact.unlink()
        result = controller.auto()

        assert result.success is False
        assert result.status is TaskStatus.ABORTED
        assert result.exit_code == 2
        [alert] = store.alerts.list()
        assert alert.severity is AlertSeverity.CRITICAL
        assert "aborted" in alert.message
        assert "verifies" in alert.message
        assert "verifies" in store.read().last_error


# =============================================================================
# Explicit recover / interactive
# =============================================================================


class TestRecover:
    def test_rolls_back_to_named_checkpoint(self, controller, store, paused):
        _, (first, _) = paused(PauseReason.FATAL_ERROR)
        result = controller.recover(first.checkpoint_id)
        assert result.success is True
        assert result.resume_step == 1
        task = store.read()
        assert task.current_step_index == 1
        assert task.last_checkpoint_id == first.checkpoint_id

    def test_second_call_is_noop(self, controller, store, paused):
        _, (first, _) = paused()
        controller.recover(first.checkpoint_id)
        again = controller.recover(first.checkpoint_id)
        assert again.success is True
        assert again.message.startswith("Already restored")
        assert len(store.list_backups()) == 1

    def test_unknown_checkpoint(self, controller, paused):
        paused()
        with pytest.raises(RecoveryError, match="No checkpoint"):
            controller.recover("ckpt_does_not_exist")

    def test_other_tasks_checkpoint(self, controller, checkpoints, paused):
        paused()
        foreign = checkpoints.create("01OTHERTASK", 0, {"done": 0})
        with pytest.raises(RecoveryError, match="belongs to task 01OTHERTASK"):
            controller.recover(foreign.checkpoint_id)

    def test_failed_verification_stays_paused(self, controller, store, paused, artifact_root):
        _, (_, second) = paused()
        (artifact_root / "step1.csv").unlink()

        result = controller.recover(second.checkpoint_id)

        assert result.success is False
        task = store.read()
        assert task.status is TaskStatus.PAUSED
        assert task.pause_reason is PauseReason.INTEGRITY_FAILURE
        assert task.current_step_index == 2
        [alert] = store.alerts.list()
        assert alert.severity is AlertSeverity.CRITICAL
        assert alert.related_checkpoint_id == second.checkpoint_id

    def test_unreadable_checkpoint_file(self, controller, store, checkpoints, paused):
        paused()
        (checkpoints.directory / "ckpt_garbled.json").write_text("{not json")
        result = controller.recover("ckpt_garbled")
        assert result.success is False
        assert store.read().pause_reason is PauseReason.INTEGRITY_FAILURE


class TestInteractive:
    def test_cancel(self, controller, store, paused):
        paused()
        result = controller.interactive(lambda candidates: None)
        assert result.success is False
        assert result.status is TaskStatus.PAUSED
        assert store.list_backups() == []

    def test_chooser_sees_all_candidates(self, controller, store, paused):
        _, created = paused()
        offered = []

        def choose_oldest(candidates):
            offered.extend(candidates)
            return candidates[-1].checkpoint_id

        result = controller.interactive(choose_oldest)
        assert len(offered) == len(created)
        assert result.action == "interactive"
        assert result.resume_step == 1


# =============================================================================
# Retry current / continue
# =============================================================================


class TestRetryCurrent:
    def test_fresh_budget_at_current_step(self, controller, store, paused):
        task, (_, second) = paused()
        before = store.read().step_started_at
        result = controller.retry_current(task.id)
        assert result.success is True
        assert result.resume_step == 2
        assert store.read().step_started_at > before

    def test_wrong_task(self, controller, paused):
        paused()
        with pytest.raises(RecoveryError, match="not the current task"):
            controller.retry_current("01NOTTHISONE")

    def test_step_not_backed_by_latest(self, controller, store, paused, artifact_root):
        task, _ = paused()
        (artifact_root / "step1.csv").unlink()
        with pytest.raises(RecoveryError, match="not backed by the newest valid checkpoint"):
            controller.retry_current(task.id)

    def test_first_step(self, controller, paused):
        task, _ = paused(step=0)
        assert controller.retry_current(task.id).resume_step == 0


class TestContinuable:
    @pytest.mark.parametrize("status", [TaskStatus.RUNNING, TaskStatus.RETRY_PENDING, TaskStatus.RECOVERING])
    def test_live_statuses(self, controller, make_task, status):
        task = make_task(status)
        assert controller.continuable(task.id).id == task.id

    def test_paused_needs_recovery(self, controller, paused):
        task, _ = paused()
        with pytest.raises(RecoveryError, match="cannot be continued"):
            controller.continuable(task.id)

    def test_wrong_id(self, controller, make_task):
        make_task(TaskStatus.RUNNING)
        with pytest.raises(RecoveryError):
            controller.continuable("01NOTTHISONE")


# =============================================================================
# Smart recovery
# =============================================================================


class TestSmartRecovery:
    def test_corrupt_store_left_alone(self, controller, store):
        store.status_path.write_text("{")
        diagnosis = controller.smart_recovery()
        assert diagnosis.store_corrupt is True
        assert diagnosis.exit_code == 2
        assert store.status_path.read_text() == "{"
        assert store.alerts.list()[0].severity is AlertSeverity.CRITICAL

    def test_undecodable_store_reported_as_corrupt(self, controller, store):
        store.status_path.write_bytes(b'{"task": \xff}')
        diagnosis = controller.smart_recovery()
        assert diagnosis.store_corrupt is True
        assert diagnosis.exit_code == 2

    def test_no_task(self, controller):
        diagnosis = controller.smart_recovery()
        assert diagnosis.findings == ["No task in state directory"]
        assert diagnosis.exit_code == 0

    def test_stale_recovering_repaired(self, controller, store, make_task):
        make_task(TaskStatus.RECOVERING, step=1)
        diagnosis = controller.smart_recovery()
        assert diagnosis.repaired
        assert diagnosis.recovery is None
        assert store.read().status is TaskStatus.PAUSED
        assert store.read().pause_reason is PauseReason.RECOVERY_INTERRUPTED
        assert diagnosis.exit_code == 1

    def test_retry_exhausted_auto_recovers(self, controller, store, paused):
        paused()
        diagnosis = controller.smart_recovery()
        assert diagnosis.recovery is not None and diagnosis.recovery.success
        assert diagnosis.task_status is TaskStatus.RUNNING
        assert diagnosis.exit_code == 0

    def test_fatal_pause_needs_operator(self, controller, store, paused):
        paused(PauseReason.FATAL_ERROR)
        diagnosis = controller.smart_recovery()
        assert diagnosis.recovery is None
        assert any("recover explicitly" in f for f in diagnosis.findings)
        assert store.read().status is TaskStatus.PAUSED

    def test_running_task_reported(self, controller, make_task):
        task = make_task(TaskStatus.RUNNING)
        diagnosis = controller.smart_recovery()
        assert any(f"--continue {task.id}" in f for f in diagnosis.findings)
        assert diagnosis.exit_code == 0
