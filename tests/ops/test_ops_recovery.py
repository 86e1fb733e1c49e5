"""Tests for recovery, retry and health operations."""

import os
from datetime import timedelta
from pathlib import Path

import pytest

from vigil.core.models import LogEntry, PauseReason, TaskStatus
from vigil.core.settings import RetentionSettings
from vigil.core.timestamps import utc_now
from vigil.ops import health as health_ops
from vigil.ops import recovery as recovery_ops
from vigil.ops import retry as retry_ops
from vigil.ops.context import OperationContext
from vigil.ops.run import run_plan

pytestmark = pytest.mark.usefixtures("quiet_host")


@pytest.fixture
def exhausted(ctx, store, write_plan):
    """Run a plan whose second step keeps failing; returns the paused task."""
    run_plan(ctx, write_plan("produce", "connection_reset"))
    task = store.read()
    assert task.pause_reason is PauseReason.RETRY_EXHAUSTED
    return task


@pytest.fixture
def dry(settings):
    return OperationContext.from_settings(settings, dry_run=True)


# =============================================================================
# Recovery
# =============================================================================


class TestRecoveryOps:
    def test_auto(self, ctx, store, exhausted):
        result = recovery_ops.auto_recover(ctx)
        assert result.exit_code == 0
        assert result.data["resume_step"] == 1
        assert store.read().status is TaskStatus.RUNNING

    def test_auto_refused(self, ctx, make_task):
        make_task(TaskStatus.PAUSED, pause_reason=PauseReason.INTEGRITY_FAILURE)
        result = recovery_ops.auto_recover(ctx)
        assert result.success is False
        assert result.error.code == "RECOVERY"

    def test_dry_run_changes_nothing(self, dry, store, exhausted):
        result = recovery_ops.auto_recover(dry)
        assert result.data == {"dry_run": True, "would_run": "auto"}
        assert store.read().status is TaskStatus.PAUSED

    def test_recover_point(self, ctx, checkpoints, exhausted):
        [cp] = checkpoints.list(exhausted.id)
        result = recovery_ops.recover_point(ctx, cp.checkpoint_id)
        assert result.data["checkpoint_id"] == cp.checkpoint_id

    def test_interactive_cancel(self, ctx, exhausted):
        result = recovery_ops.interactive_recover(ctx, lambda candidates: None)
        assert result.data["success"] is False
        assert result.exit_code == 1

    def test_verify_and_list(self, ctx, exhausted):
        verified = recovery_ops.verify_task(ctx, exhausted.id)
        assert verified.exit_code == 0
        assert verified.data["valid"] == 1
        points = recovery_ops.list_points(ctx)
        assert len(points.data) == 1
        assert points.data[0]["resume_step"] == 1

    def test_verify_without_valid_checkpoint(self, ctx, store, checkpoints, make_task, artifact_root):
        task = make_task(TaskStatus.PAUSED, step=1, pause_reason=PauseReason.RETRY_EXHAUSTED)
        (artifact_root / "a.csv").write_text("x")
        checkpoints.create(task.id, 0, {}, artifacts=[str(artifact_root / "a.csv")])
        (artifact_root / "a.csv").unlink()
        assert recovery_ops.verify_task(ctx, task.id).exit_code == 1

    def test_smart_recover_corrupt(self, ctx, store):
        store.status_path.write_text("{")
        result = recovery_ops.smart_recover(ctx)
        assert result.data["store_corrupt"] is True
        assert result.exit_code == 2

    def test_smart_recover_leaves_report(self, ctx, store, exhausted):
        result = recovery_ops.smart_recover(ctx)
        report = Path(result.data["report"])
        assert report.parent == store.state_dir
        assert report.name.startswith("RECOVERY_REPORT_")
        text = report.read_text()
        assert "**Recovery type**: smart_recovery" in text
        assert "## Checkpoints" in text

    def test_smart_recover_dry_run_writes_no_report(self, dry, store, exhausted):
        result = recovery_ops.smart_recover(dry)
        assert "report" not in result.data
        assert list(store.state_dir.glob("RECOVERY_REPORT_*.md")) == []

    def test_recovery_report(self, ctx, store, exhausted, tmp_path):
        result = recovery_ops.recovery_report(ctx, exhausted.id, directory=tmp_path / "reports")
        assert result.success is True
        text = Path(result.data["path"]).read_text()
        assert "**Recovery type**: manual_recovery" in text
        assert "- **Status**: paused (retry_exhausted)" in text
        assert "## Retries" in text

    def test_recovery_report_wrong_task(self, ctx, exhausted):
        result = recovery_ops.recovery_report(ctx, "01NOTTHISONE")
        assert result.success is False
        assert result.error.code == "RECOVERY"

    def test_continue_after_auto(self, ctx, store, exhausted):
        recovery_ops.auto_recover(ctx)
        result = recovery_ops.continue_task(ctx, exhausted.id)
        # The failing step fails again: the fresh attempt budget is used up once more.
        assert result.data["status"] == "paused"
        assert result.exit_code == 1

    def test_continue_completes(self, ctx, store, make_task, write_plan):
        plan = write_plan("produce", "produce")
        task = make_task(TaskStatus.RUNNING, total=2, plan_reference=str(plan))
        result = recovery_ops.continue_task(ctx, task.id)
        assert result.data["status"] == "completed"
        assert result.exit_code == 0

    def test_continue_wrong_task(self, ctx, make_task):
        make_task(TaskStatus.RUNNING)
        assert recovery_ops.continue_task(ctx, "01NOTTHISONE").error.code == "RECOVERY"


# =============================================================================
# Retry
# =============================================================================


class TestRetryOps:
    def test_stats(self, ctx, exhausted):
        stats = retry_ops.get_stats(ctx).data
        assert stats["total_failures"] == 3
        assert stats["total_retries"] == 2
        assert stats["escalations"] == 1
        assert stats["failures_per_step"] == {1: 3}

    def test_list_newest_first(self, ctx, exhausted):
        result = retry_ops.list_retries(ctx, limit=2)
        assert [r["attempt_number"] for r in result.data] == [2, 1]
        assert result.total == 3
        assert result.has_more is True

    def test_retry_task_restores_current_step(self, ctx, store, exhausted):
        result = retry_ops.retry_task(ctx, exhausted.id)
        assert result.exit_code == 0
        task = store.read()
        assert task.status is TaskStatus.RUNNING
        assert task.current_step_index == 1
        assert retry_ops.get_stats(ctx).data["current_step_attempts"] == 0

    def test_retry_task_dry_run(self, dry, store, exhausted):
        assert retry_ops.retry_task(dry, exhausted.id).data["dry_run"] is True
        assert store.read().status is TaskStatus.PAUSED

    def test_cleanup(self, ctx, store, checkpoints, make_task):
        task = make_task(TaskStatus.PAUSED, step=4, total=5, pause_reason=PauseReason.RETRY_EXHAUSTED)
        created = [checkpoints.create(task.id, i, {"done": i}) for i in range(4)]
        task.last_checkpoint_id = created[-1].checkpoint_id
        store.write(task)

        preview = retry_ops.cleanup(OperationContext.from_settings(ctx.settings, dry_run=True), keep=2)
        result = retry_ops.cleanup(ctx, keep=2)

        expected = [created[0].checkpoint_id, created[1].checkpoint_id]
        assert preview.data["would_remove"] == expected
        assert result.data["removed"] == expected
        assert result.data["kept"] == 2

    def test_cleanup_expires_old_reports(self, ctx, store, make_task):
        make_task(TaskStatus.COMPLETED, step=3, total=3)
        old = store.state_dir / "HEALTH_REPORT_20260101_000000.md"
        fresh = store.state_dir / "RECOVERY_REPORT_20260301_000000.md"
        for path in (old, fresh):
            path.write_text("# report\n")
        ten_days_ago = (utc_now() - timedelta(days=10)).timestamp()
        os.utime(old, (ten_days_ago, ten_days_ago))

        result = retry_ops.cleanup(ctx)

        assert result.data["reports_removed"] == [old.name]
        assert not old.exists()
        assert fresh.exists()

    def test_cleanup_prunes_logs_of_older_tasks(self, settings, store, make_task):
        for i in range(4):
            store.append_log(LogEntry(event=f"old{i}", task_id="OLD"))
        task = make_task(TaskStatus.COMPLETED, step=3, total=3)
        store.append_log(LogEntry(event="done", task_id=task.id))
        small = settings.model_copy(update={"retention": RetentionSettings(log_max_records=2)})

        result = retry_ops.cleanup(OperationContext.from_settings(small))

        assert result.data["log_records_removed"]["execution.log.jsonl"] == 3
        assert store.read_log()[-1].event == "done"
        assert result.warnings == []

    def test_cleanup_leaves_logs_of_live_task(self, ctx, store, make_task):
        store.append_log(LogEntry(event="old", task_id="OLD"))
        task = make_task(TaskStatus.RUNNING)

        result = retry_ops.cleanup(ctx)

        assert result.success is True
        assert result.data["log_records_removed"] == {}
        assert result.warnings == [f"Task {task.id} is running; logs were not pruned"]

    def test_stats_without_task(self, ctx):
        assert retry_ops.get_stats(ctx).success is False


# =============================================================================
# Health
# =============================================================================


class TestHealthOps:
    def test_check_without_task(self, ctx):
        result = health_ops.check_health(ctx)
        assert result.exit_code == 0
        assert result.data["status"] == "healthy"

    def test_check_stalled_task(self, ctx, store, make_task):
        task = make_task(TaskStatus.RUNNING)
        task.last_heartbeat_at = utc_now() - timedelta(hours=2)
        task.step_started_at = task.last_heartbeat_at
        store.write(task)
        result = health_ops.check_health(ctx)
        assert result.exit_code == 1
        assert result.data["status"] == "unhealthy"

    def test_check_publish_false(self, ctx, store):
        health_ops.check_health(ctx, publish=False)
        assert store.read_health() == []

    def test_report(self, ctx, tmp_path, exhausted):
        out = tmp_path / "reports"
        result = health_ops.generate_report(ctx, out)
        path = result.data["path"]
        assert path.startswith(str(out))
        text = Path(path).read_text()
        assert "## Retries" in text
        assert "## Checkpoints" in text
