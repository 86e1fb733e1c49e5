"""
Alert operations.

List and acknowledge alerts in the state directory's alert log. Alerts are
never deleted; acknowledgement is the only change an operator makes.
"""

from __future__ import annotations

from typing import Any

from vigil.core.errors import VigilError
from vigil.core.logging import get_logger
from vigil.core.models import AlertSeverity
from vigil.ops.context import OperationContext
from vigil.ops.result import OperationResult, PagedResult, start_timer

logger = get_logger(__name__)


def list_alerts(
    ctx: OperationContext,
    *,
    include_acknowledged: bool = False,
    min_severity: AlertSeverity | None = None,
    task_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> PagedResult[dict[str, Any]]:
    """Alerts newest first, unacknowledged only unless *include_acknowledged*."""
    timer = start_timer()
    try:
        alerts = ctx.store.alerts.list(
            task_id=task_id,
            include_acknowledged=include_acknowledged,
            min_severity=min_severity,
        )
        alerts.reverse()
        page = [a.to_dict() for a in alerts[offset : offset + limit]]
        return PagedResult.from_items(
            page,
            total=len(alerts),
            limit=limit,
            offset=offset,
            elapsed_ms=timer.elapsed_ms,
        )
    except VigilError as exc:
        logger.error("op_failed", op="list_alerts", error=exc.message)
        return PagedResult.from_error(exc, elapsed_ms=timer.elapsed_ms)


def ack_alert(ctx: OperationContext, alert_id: str) -> OperationResult[dict[str, Any]]:
    """Acknowledge one alert (idempotent)."""
    timer = start_timer()

    if ctx.dry_run:
        return OperationResult.ok({"dry_run": True, "would_ack": alert_id}, elapsed_ms=timer.elapsed_ms)

    try:
        alert = ctx.store.alerts.acknowledge(alert_id)
    except VigilError as exc:
        return OperationResult.from_error(exc, elapsed_ms=timer.elapsed_ms)

    if alert is None:
        return OperationResult.fail(
            "NOT_FOUND",
            f"Alert '{alert_id}' not found",
            elapsed_ms=timer.elapsed_ms,
        )
    return OperationResult.ok(alert.to_dict(), elapsed_ms=timer.elapsed_ms)
