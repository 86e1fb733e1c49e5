"""
Health operations.

One-shot health checks and the markdown report behind ``vigil health`` and
``vigil monitor --check``. The continuous loop itself is
:meth:`vigil.health.monitor.HealthMonitor.run`; :func:`build_monitor` wires
it to the context's store and thresholds.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from vigil.core.errors import VigilError
from vigil.core.logging import get_logger
from vigil.core.timestamps import utc_now
from vigil.execution.retry import RetryEngine
from vigil.health.monitor import HealthMonitor
from vigil.health.report import render_markdown, write_report
from vigil.ops.context import OperationContext
from vigil.ops.result import OperationResult, start_timer

logger = get_logger(__name__)


def build_monitor(ctx: OperationContext) -> HealthMonitor:
    return HealthMonitor(ctx.store, ctx.settings.health)


def check_health(ctx: OperationContext, *, publish: bool = True) -> OperationResult[dict[str, Any]]:
    """Take one health sample; the exit code is 0 when healthy, 1 otherwise."""
    timer = start_timer()
    try:
        report = build_monitor(ctx).sample_once(publish=publish)
    except VigilError as exc:
        logger.error("op_failed", op="check_health", error=exc.message)
        return OperationResult.from_error(exc, elapsed_ms=timer.elapsed_ms)
    return OperationResult.ok(
        report.to_dict(),
        elapsed_ms=timer.elapsed_ms,
        exit_code=0 if report.healthy else 1,
    )


def generate_report(ctx: OperationContext, directory: Path | None = None) -> OperationResult[dict[str, Any]]:
    """Sample once, then write ``HEALTH_REPORT_<stamp>.md`` into *directory*.

    The report defaults to the state directory.
    """
    timer = start_timer()
    try:
        monitor = build_monitor(ctx)
        report = monitor.sample_once()
        task = report.task
        alerts = ctx.store.alerts.list(task_id=task.id if task else None, include_acknowledged=False)
        retry_stats = RetryEngine(ctx.store, ctx.settings.retry).stats(task) if task else None
        checkpoints = ctx.checkpoints().inspect(task.id) if task else []

        markdown = render_markdown(
            report,
            history=monitor.snapshots,
            alerts=alerts,
            retry_stats=retry_stats,
            checkpoints=checkpoints,
        )
        target_dir = directory or ctx.store.state_dir
        target_dir.mkdir(parents=True, exist_ok=True)
        path = write_report(target_dir, markdown, stamp=utc_now().strftime("%Y%m%d_%H%M%S"))
    except VigilError as exc:
        logger.error("op_failed", op="generate_report", error=exc.message)
        return OperationResult.from_error(exc, elapsed_ms=timer.elapsed_ms)

    logger.info("health_report_written", path=str(path))
    return OperationResult.ok(
        {"path": str(path), "status": report.status.value},
        elapsed_ms=timer.elapsed_ms,
    )
