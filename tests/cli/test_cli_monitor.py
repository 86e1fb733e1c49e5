"""Tests for ``vigil monitor``, ``vigil health`` and ``vigil retry``."""

import json
from datetime import timedelta

import pytest

from vigil.core.models import TaskStatus
from vigil.core.timestamps import utc_now
from vigil.ops.status import DASHBOARD_FILE

pytestmark = pytest.mark.usefixtures("quiet_host")


@pytest.fixture
def stalled(store, make_task):
    task = make_task(TaskStatus.RUNNING)
    task.last_heartbeat_at = utc_now() - timedelta(hours=1)
    task.step_started_at = task.last_heartbeat_at
    store.write(task)
    return task


class TestMonitor:
    def test_requires_mode(self, invoke):
        assert invoke("monitor").exit_code == 3

    def test_check_healthy(self, invoke):
        result = invoke("monitor", "--check", "--json")
        assert result.exit_code == 0
        assert json.loads(result.stdout)["status"] == "healthy"

    def test_check_stalled_exits_1(self, invoke, stalled):
        assert invoke("monitor", "--check").exit_code == 1

    def test_dashboard(self, invoke, store, make_task):
        make_task(TaskStatus.RUNNING)
        result = invoke("monitor", "--dashboard")
        assert result.exit_code == 0
        assert (store.state_dir / DASHBOARD_FILE).exists()

    def test_background_samples(self, invoke, store):
        result = invoke("monitor", "--background", "--max-samples", "1")
        assert result.exit_code == 0
        assert "1 sample" in result.stdout
        assert len(store.read_health()) == 1


class TestHealth:
    def test_check_table(self, invoke):
        result = invoke("health", "--check")
        assert result.exit_code == 0
        assert "healthy" in result.stdout

    def test_check_stalled(self, invoke, stalled):
        result = invoke("health", "--check", "--json")
        assert result.exit_code == 1
        assert json.loads(result.stdout)["status"] == "unhealthy"

    def test_report(self, invoke, tmp_path, make_task):
        make_task(TaskStatus.RUNNING)
        out = tmp_path / "reports"
        result = invoke("health", "--report", "--output-dir", str(out))
        assert result.exit_code == 0
        [report] = out.glob("HEALTH_REPORT_*.md")
        assert report.read_text().startswith("# Health Report")

    def test_monitor_mode(self, invoke, store):
        assert invoke("health", "--monitor", "--max-samples", "2").exit_code == 0
        assert len(store.read_health()) == 2

    def test_conflicting_modes(self, invoke):
        assert invoke("health", "--check", "--report").exit_code == 3


class TestRetry:
    @pytest.fixture
    def paused_run(self, invoke, store, write_plan):
        invoke("run", "--plan", str(write_plan("produce", "connection_reset")))
        return store.read()

    def test_stats(self, invoke, paused_run):
        result = invoke("retry", "--stats", "--json")
        assert result.exit_code == 0
        stats = json.loads(result.stdout)
        assert stats["total_failures"] == 3
        assert stats["last_error"] == "ConnectionError: connection reset by peer"

    def test_monitor_json(self, invoke, paused_run):
        payload = json.loads(invoke("retry", "--monitor", "--json").stdout)
        assert payload["total"] == 3
        assert payload["items"][0]["decision"] == "escalate"

    def test_retry_current_step(self, invoke, store, paused_run):
        result = invoke("retry", "--retry", paused_run.id)
        assert result.exit_code == 0
        assert store.read().status is TaskStatus.RUNNING

    def test_retry_wrong_task(self, invoke, paused_run):
        assert invoke("retry", "--retry", "01NOTTHISONE").exit_code == 1

    def test_cleanup(self, invoke, paused_run):
        result = invoke("retry", "--cleanup", "--keep", "1", "--json")
        assert result.exit_code == 0
        assert json.loads(result.stdout)["removed"] == []

    def test_stats_without_task_exits_2(self, invoke):
        assert invoke("retry", "--stats").exit_code == 2
