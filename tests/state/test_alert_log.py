"""Tests for vigil.state.alerts.AlertLog - dedup and acknowledgement."""

from datetime import UTC, datetime, timedelta

import pytest

from vigil.core.models import AlertSeverity
from vigil.state.alerts import AlertLog


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))


@pytest.fixture
def log(tmp_path, clock):
    return AlertLog(tmp_path / "alerts.jsonl", cooldown_seconds=300, clock=clock)


def _stalled(log, message="stalled"):
    return log.raise_alert(
        AlertSeverity.WARNING, message, task_id="T1", source="health", fingerprint="fp", deduplicate=True
    )


class TestRaise:
    def test_raise_and_list(self, log):
        alert = log.raise_alert(AlertSeverity.WARNING, "stalled", task_id="T1", source="health", step_index=2)
        assert alert is not None
        [listed] = log.list()
        assert listed.alert_id == alert.alert_id
        assert listed.step_index == 2
        assert listed.acknowledged is False

    def test_duplicate_within_cooldown_suppressed(self, log, clock):
        first = _stalled(log)
        clock.advance(299)
        second = _stalled(log, "stalled again")
        assert first is not None
        assert second is None
        assert len(log.list()) == 1

    def test_duplicate_after_cooldown_raised(self, log, clock):
        _stalled(log)
        clock.advance(301)
        assert _stalled(log)
        assert len(log.list()) == 2

    def test_acknowledged_alert_does_not_suppress(self, log):
        first = _stalled(log)
        log.acknowledge(first.alert_id)
        assert _stalled(log)

    def test_default_fingerprint_from_content(self, log):
        log.raise_alert(AlertSeverity.INFO, "same", task_id="T1", source="health", deduplicate=True)
        assert log.raise_alert(AlertSeverity.INFO, "same", task_id="T1", source="health", deduplicate=True) is None
        assert log.raise_alert(AlertSeverity.INFO, "other", task_id="T1", source="health", deduplicate=True) is not None

    def test_transition_alerts_never_suppressed(self, log, clock):
        """Each pause is its own event, even with the same message seconds apart."""
        first = log.raise_alert(AlertSeverity.CRITICAL, "paused", task_id="T1", source="orchestrator", step_index=1)
        clock.advance(5)
        second = log.raise_alert(AlertSeverity.CRITICAL, "paused", task_id="T1", source="orchestrator", step_index=1)
        assert first is not None and second is not None
        assert first.fingerprint == second.fingerprint
        assert len(log.list()) == 2


class TestList:
    def test_filters(self, log):
        log.raise_alert(AlertSeverity.INFO, "a", task_id="T1", source="x")
        crit = log.raise_alert(AlertSeverity.CRITICAL, "b", task_id="T1", source="x")
        log.raise_alert(AlertSeverity.WARNING, "c", task_id="T2", source="x")
        log.acknowledge(crit.alert_id)

        assert [a.message for a in log.list(task_id="T1")] == ["a", "b"]
        assert [a.message for a in log.list(include_acknowledged=False)] == ["a", "c"]
        assert [a.message for a in log.list(min_severity=AlertSeverity.WARNING)] == ["b", "c"]

    def test_empty(self, log):
        assert log.list() == []


class TestAcknowledge:
    def test_ack_is_idempotent(self, log):
        alert = log.raise_alert(AlertSeverity.CRITICAL, "paused", task_id="T1", source="orchestrator")
        assert log.acknowledge(alert.alert_id).acknowledged is True
        assert log.acknowledge(alert.alert_id).acknowledged is True
        # One ack event only.
        assert log.path.read_text().count('"type":"ack"') == 1

    def test_unknown_alert(self, log):
        assert log.acknowledge("nope") is None

    def test_ack_survives_reload(self, log, tmp_path):
        alert = log.raise_alert(AlertSeverity.CRITICAL, "paused", task_id="T1", source="orchestrator")
        log.acknowledge(alert.alert_id)
        assert AlertLog(log.path).get(alert.alert_id).acknowledged is True


class TestPrune:
    def _acked(self, log, task_id, message):
        alert = log.raise_alert(AlertSeverity.WARNING, message, task_id=task_id, source="health")
        log.acknowledge(alert.alert_id)
        return alert

    def test_drops_oldest_acknowledged_with_their_acks(self, log):
        self._acked(log, "OLD", "first")
        self._acked(log, "OLD", "second")
        removed = log.prune(2)
        assert removed == 2
        [alert] = log.list()
        assert alert.message == "second"
        assert alert.acknowledged is True

    def test_open_alerts_kept(self, log):
        log.raise_alert(AlertSeverity.CRITICAL, "paused", task_id="OLD", source="orchestrator")
        self._acked(log, "OLD", "noise")
        assert log.prune(1) == 2
        assert [a.message for a in log.list()] == ["paused"]

    def test_current_task_kept(self, log):
        self._acked(log, "CUR", "mine")
        self._acked(log, "OLD", "theirs")
        log.prune(1, keep_task_id="CUR")
        assert [a.message for a in log.list()] == ["mine"]

    def test_dry_run(self, log):
        self._acked(log, "OLD", "first")
        assert log.prune(0, dry_run=True) == 2
        assert len(log.list()) == 1
