"""
Retry operations.

Retry statistics, the recent retry log, operator-forced re-attempts of the
current step and state-directory retention for ``vigil retry``.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any

from vigil.core.errors import VigilError
from vigil.core.logging import get_logger
from vigil.execution.retry import RetryEngine
from vigil.health.monitor import LIVE_STATUSES
from vigil.ops.context import OperationContext
from vigil.ops.result import OperationResult, PagedResult, start_timer
from vigil.recovery.controller import RecoveryController

logger = get_logger(__name__)

REPORT_PATTERNS = ("HEALTH_REPORT_*.md", "RECOVERY_REPORT_*.md")


def get_stats(ctx: OperationContext) -> OperationResult[dict[str, Any]]:
    """Retry totals and budget use for the current task."""
    timer = start_timer()
    try:
        task = ctx.store.read()
        stats = RetryEngine(ctx.store, ctx.settings.retry).stats(task)
    except VigilError as exc:
        return OperationResult.from_error(exc, elapsed_ms=timer.elapsed_ms)
    return OperationResult.ok(stats, elapsed_ms=timer.elapsed_ms)


def list_retries(ctx: OperationContext, *, limit: int = 20) -> PagedResult[dict[str, Any]]:
    """Most recent retry records of the current task, newest first."""
    timer = start_timer()
    try:
        task = ctx.store.read()
        records = ctx.store.read_retries(task.id)
    except VigilError as exc:
        return PagedResult.from_error(exc, elapsed_ms=timer.elapsed_ms)
    records.reverse()
    return PagedResult.from_items(
        [r.to_dict() for r in records[:limit]],
        total=len(records),
        limit=limit,
        elapsed_ms=timer.elapsed_ms,
    )


def retry_task(ctx: OperationContext, task_id: str) -> OperationResult[dict[str, Any]]:
    """Re-attempt the current step of a paused task with a fresh attempt budget."""
    timer = start_timer()
    if ctx.dry_run:
        return OperationResult.ok({"dry_run": True, "would_retry": task_id}, elapsed_ms=timer.elapsed_ms)
    try:
        result = RecoveryController(ctx.store, ctx.checkpoints()).retry_current(task_id)
    except VigilError as exc:
        logger.error("op_failed", op="retry_task", error=exc.message)
        return OperationResult.from_error(exc, elapsed_ms=timer.elapsed_ms)
    return OperationResult.ok(result.to_dict(), elapsed_ms=timer.elapsed_ms, exit_code=result.exit_code)


def cleanup(ctx: OperationContext, *, keep: int | None = None) -> OperationResult[dict[str, Any]]:
    """Apply retention to the state directory.

    Removes superseded checkpoints (keeping the newest *keep* and the task's
    own), trims the JSONL logs to ``retention.log_max_records`` records of
    older tasks, and deletes generated reports older than
    ``retention.report_max_age_days``. Logs are left alone while the task is
    live, since the supervisor may be appending to them.
    """
    timer = start_timer()
    keep = keep or ctx.settings.checkpoint.keep
    retention = ctx.settings.retention
    warnings: list[str] = []
    try:
        task = ctx.store.read()
        manager = ctx.checkpoints()
        protect = [cp for cp in (task.last_checkpoint_id, task.restored_from) if cp]
        if ctx.dry_run:
            latest = manager.latest_valid(task.id)
            if latest is not None:
                protect.append(latest.checkpoint_id)
            removed = [cp.checkpoint_id for cp in manager.list(task.id)[:-keep] if cp.checkpoint_id not in protect]
        else:
            removed = manager.cleanup(task.id, keep=keep, protect=protect)

        if task.status in LIVE_STATUSES:
            warnings.append(f"Task {task.id} is {task.status.value}; logs were not pruned")
            pruned: dict[str, int] = {}
        else:
            pruned = ctx.store.prune_logs(retention.log_max_records, keep_task_id=task.id, dry_run=ctx.dry_run)
        reports = _expired_reports(ctx.store.state_dir, retention.report_max_age_days)
        if not ctx.dry_run:
            for path in reports:
                path.unlink(missing_ok=True)
    except VigilError as exc:
        logger.error("op_failed", op="cleanup", error=exc.message)
        return OperationResult.from_error(exc, elapsed_ms=timer.elapsed_ms)
    except OSError as exc:
        logger.error("op_failed", op="cleanup", error=str(exc))
        return OperationResult.fail("STATE_STORE", f"Cleanup failed: {exc}", elapsed_ms=timer.elapsed_ms)

    if ctx.dry_run:
        data = {
            "dry_run": True,
            "would_remove": removed,
            "keep": keep,
            "log_records_would_remove": pruned,
            "reports_would_remove": [p.name for p in reports],
        }
    else:
        logger.info("cleanup_done", checkpoints=len(removed), log_records=sum(pruned.values()), reports=len(reports))
        data = {
            "removed": removed,
            "kept": len(manager.list(task.id)),
            "keep": keep,
            "log_records_removed": pruned,
            "reports_removed": [p.name for p in reports],
        }
    return OperationResult.ok(data, warnings=warnings, elapsed_ms=timer.elapsed_ms)


def _expired_reports(directory: Path, max_age_days: float) -> list[Path]:
    cutoff = time.time() - max_age_days * 86400
    return sorted(
        path
        for pattern in REPORT_PATTERNS
        for path in directory.glob(pattern)
        if path.stat().st_mtime < cutoff
    )
