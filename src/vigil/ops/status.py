"""
Status operations.

Read-only views over the state directory for ``vigil monitor``: the
dashboard snapshot (task, progress, heartbeat age, latest health sample,
open alerts, recent log) and the recent execution log.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from vigil.core.errors import VigilError
from vigil.core.logging import get_logger
from vigil.core.models import AlertSeverity
from vigil.core.timestamps import seconds_since, utc_now
from vigil.ops.context import OperationContext
from vigil.ops.result import OperationResult, start_timer
from vigil.state.files import atomic_write_text

logger = get_logger(__name__)


def get_dashboard(ctx: OperationContext, *, recent: int = 10) -> OperationResult[dict[str, Any]]:
    """Everything the monitor dashboard renders, in one read."""
    timer = start_timer()
    try:
        task = ctx.store.read_optional()
        if task is None:
            return OperationResult.ok({"task": None}, elapsed_ms=timer.elapsed_ms)

        now = utc_now()
        heartbeats = [t for t in (task.last_heartbeat_at, ctx.store.read_heartbeat(task.id)) if t]
        latest = ctx.store.latest_health()
        open_alerts = ctx.store.alerts.list(task_id=task.id, include_acknowledged=False)
        checkpoints = ctx.checkpoints().list(task.id)

        data = {
            "task": task.to_dict(),
            "progress_percent": round(task.progress_ratio * 100, 1),
            "seconds_since_heartbeat": seconds_since(max(heartbeats), now) if heartbeats else None,
            "checkpoints": len(checkpoints),
            "latest_checkpoint": checkpoints[-1].checkpoint_id if checkpoints else None,
            "health": latest.to_dict() if latest else None,
            "open_alerts": len(open_alerts),
            "critical_alerts": sum(1 for a in open_alerts if a.severity is AlertSeverity.CRITICAL),
            "abort_requested": ctx.store.abort_request() is not None,
            "recent_log": [e.to_dict() for e in ctx.store.read_log(task.id, limit=recent)],
        }
        return OperationResult.ok(data, elapsed_ms=timer.elapsed_ms)
    except VigilError as exc:
        logger.error("op_failed", op="get_dashboard", error=exc.message)
        return OperationResult.from_error(exc, elapsed_ms=timer.elapsed_ms)


def get_task(ctx: OperationContext) -> OperationResult[dict[str, Any]]:
    """The current task record."""
    timer = start_timer()
    try:
        task = ctx.store.read()
        return OperationResult.ok(task.to_dict(), elapsed_ms=timer.elapsed_ms)
    except VigilError as exc:
        return OperationResult.from_error(exc, elapsed_ms=timer.elapsed_ms)


DASHBOARD_FILE = "MONITOR_DASHBOARD.md"


def render_dashboard(data: dict[str, Any]) -> str:
    """Markdown rendering of :func:`get_dashboard` data."""
    task = data.get("task")
    if task is None:
        return "# Monitor Dashboard\n\nNo task in state directory.\n"

    health = data.get("health") or {}
    lines = [
        "# Monitor Dashboard",
        "",
        f"**Generated**: {utc_now().isoformat()}",
        "",
        "## Task",
        "",
        f"- **ID**: {task['id']}",
        f"- **Status**: {task['status']}",
        f"- **Step**: {task['current_step_index']}/{task['total_steps']} ({data['progress_percent']}%)",
        f"- **Seconds since heartbeat**: {data['seconds_since_heartbeat']}",
        f"- **Checkpoints**: {data['checkpoints']} (latest {data['latest_checkpoint']})",
    ]
    if task.get("pause_reason"):
        lines.append(f"- **Pause reason**: {task['pause_reason']}")
    if task.get("last_error"):
        lines.append(f"- **Last error**: {task['last_error']}")
    if data.get("abort_requested"):
        lines.append("- **Abort requested**: yes")

    lines += ["", "## Health", ""]
    if health:
        lines += [
            f"- **Sampled**: {health.get('timestamp')}",
            f"- **Load per CPU**: {health.get('cpu_load')}",
            f"- **Memory used %**: {health.get('memory_pressure')}",
            f"- **Disk free ratio**: {health.get('disk_free_ratio')}",
            f"- **Resource pressure**: {health.get('resource_pressure')}",
        ]
    else:
        lines.append("No health samples yet.")

    lines += [
        "",
        "## Alerts",
        "",
        f"- **Open**: {data['open_alerts']} ({data['critical_alerts']} critical)",
        "",
        "## Recent activity",
        "",
    ]
    recent = data.get("recent_log") or []
    if recent:
        lines += ["| Time | Event | Status | Step |", "|---|---|---|---|"]
        lines += [
            f"| {e['timestamp']} | {e['event']} | {e.get('status') or ''} | {e.get('step_index')} |"
            for e in recent
        ]
    else:
        lines.append("No execution log yet.")
    return "\n".join(lines) + "\n"


def write_dashboard(ctx: OperationContext, directory: Path | None = None) -> OperationResult[dict[str, Any]]:
    """Write :data:`DASHBOARD_FILE` into *directory* (the state directory by default)."""
    timer = start_timer()
    result = get_dashboard(ctx)
    if not result.success:
        return result
    target_dir = directory or ctx.store.state_dir
    path = target_dir / DASHBOARD_FILE
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        atomic_write_text(path, render_dashboard(result.data))
    except OSError as exc:
        return OperationResult.fail("STATE_STORE", f"Cannot write dashboard: {exc}", elapsed_ms=timer.elapsed_ms)
    except VigilError as exc:
        return OperationResult.from_error(exc, elapsed_ms=timer.elapsed_ms)
    return OperationResult.ok({"path": str(path)}, elapsed_ms=timer.elapsed_ms)
