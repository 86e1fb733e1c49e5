"""Append-only alert log with acknowledgement events and cooldown dedup.

Alerts are never rewritten. Raising one appends an ``alert`` event;
acknowledging appends an ``ack`` event; :meth:`AlertLog.list` folds the two.
Repeating conditions (the health monitor re-checks the same stall every
minute) raise with ``deduplicate=True``: an alert whose fingerprint matches an
unacknowledged alert raised within the cooldown window is then suppressed, so
a stall that persists for an hour produces one warning, not sixty. Alerts
that mark a status transition are always recorded.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from vigil.core.hashing import compute_hash
from vigil.core.logging import get_logger
from vigil.core.models import Alert, AlertSeverity
from vigil.core.timestamps import to_iso8601, utc_now
from vigil.state.files import append_jsonl, read_jsonl, rewrite_jsonl, trim_records

logger = get_logger(__name__)


class AlertLog:
    """Alerts for one state directory."""

    def __init__(
        self,
        path: Path,
        *,
        cooldown_seconds: float = 300.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.path = path
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()

    def raise_alert(
        self,
        severity: AlertSeverity,
        message: str,
        *,
        task_id: str | None,
        source: str,
        checkpoint_id: str | None = None,
        step_index: int | None = None,
        fingerprint: str | None = None,
        deduplicate: bool = False,
    ) -> Alert | None:
        """Record an alert.

        With *deduplicate*, skip it while a matching alert is cooling down.

        Returns:
            The new alert, or ``None`` if it was suppressed as a duplicate.
        """
        fingerprint = fingerprint or compute_hash(task_id, source, severity.value, step_index, message)
        now = self._clock()
        with self._lock:
            if deduplicate and self._cooling_down(fingerprint, now):
                return None

            alert = Alert(
                severity=severity,
                message=message,
                related_task_id=task_id,
                related_checkpoint_id=checkpoint_id,
                step_index=step_index,
                source=source,
                fingerprint=fingerprint,
                timestamp=now,
            )
            append_jsonl(self.path, {"type": "alert", "alert": alert.to_dict()})

        log = {
            AlertSeverity.INFO: logger.info,
            AlertSeverity.WARNING: logger.warning,
            AlertSeverity.CRITICAL: logger.error,
        }[severity]
        log("alert_raised", alert_id=alert.alert_id, severity=severity.value, source=source, message=message)
        return alert

    def _cooling_down(self, fingerprint: str, now: datetime) -> bool:
        for existing in reversed(self.list()):
            if existing.fingerprint != fingerprint or existing.acknowledged:
                continue
            if (now - existing.timestamp).total_seconds() < self.cooldown_seconds:
                logger.debug("alert_suppressed", fingerprint=fingerprint, alert_id=existing.alert_id)
                return True
            return False
        return False

    def list(
        self,
        *,
        task_id: str | None = None,
        include_acknowledged: bool = True,
        min_severity: AlertSeverity | None = None,
    ) -> list[Alert]:
        """All alerts in raise order with acknowledgements applied."""
        alerts: dict[str, Alert] = {}
        for event in read_jsonl(self.path):
            kind = event.get("type")
            if kind == "alert":
                alert = Alert.from_dict(event["alert"])
                alerts[alert.alert_id] = alert
            elif kind == "ack" and event.get("alert_id") in alerts:
                alerts[event["alert_id"]].acknowledged = True

        result = list(alerts.values())
        if task_id is not None:
            result = [a for a in result if a.related_task_id == task_id]
        if not include_acknowledged:
            result = [a for a in result if not a.acknowledged]
        if min_severity is not None:
            result = [a for a in result if a.severity.rank >= min_severity.rank]
        return result

    def get(self, alert_id: str) -> Alert | None:
        for alert in self.list():
            if alert.alert_id == alert_id:
                return alert
        return None

    def acknowledge(self, alert_id: str) -> Alert | None:
        """Mark an alert acknowledged (idempotent). ``None`` if unknown."""
        with self._lock:
            alert = self.get(alert_id)
            if alert is None:
                return None
            if not alert.acknowledged:
                append_jsonl(
                    self.path,
                    {"type": "ack", "alert_id": alert_id, "timestamp": to_iso8601(self._clock())},
                )
                alert.acknowledged = True
                logger.info("alert_acknowledged", alert_id=alert_id)
        return alert

    def prune(self, max_records: int, *, keep_task_id: str | None = None, dry_run: bool = False) -> int:
        """Drop the oldest events beyond *max_records*; returns how many went.

        Alerts of *keep_task_id*, unacknowledged alerts and acknowledgements of
        kept alerts are never dropped.
        """
        with self._lock:
            events = read_jsonl(self.path)
            open_ids = {a.alert_id for a in self.list(include_acknowledged=False)}
            task_of = {
                e["alert"]["alert_id"]: e["alert"].get("related_task_id") for e in events if e.get("type") == "alert"
            }

            def protected(event: dict) -> bool:
                alert_id = event["alert"]["alert_id"] if event.get("type") == "alert" else event.get("alert_id")
                return alert_id in open_ids or (keep_task_id is not None and task_of.get(alert_id) == keep_task_id)

            kept = trim_records(events, max_records, protected=protected)
            # An ack whose alert was dropped is meaningless; drop it too.
            kept_ids = {e["alert"]["alert_id"] for e in kept if e.get("type") == "alert"}
            kept = [e for e in kept if e.get("type") == "alert" or e.get("alert_id") in kept_ids]
            removed = len(events) - len(kept)
            if removed and not dry_run:
                rewrite_jsonl(self.path, kept)
                logger.info("alert_log_pruned", removed=removed, kept=len(kept))
        return removed
