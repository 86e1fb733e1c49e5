"""
Recovery operations.

One function per ``vigil recovery`` mode, each a thin wrapper around
:class:`~vigil.recovery.controller.RecoveryController` (or, for
``--continue``, the orchestrator's ``resume``). Read-only modes never write
to the state directory; ``--report`` only adds a markdown file to it.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from vigil.core.errors import RecoveryError, VigilError
from vigil.core.logging import get_logger
from vigil.core.timestamps import utc_now
from vigil.execution.retry import RetryEngine
from vigil.ops.context import OperationContext
from vigil.ops.result import OperationResult, start_timer
from vigil.orchestration.orchestrator import Orchestrator, load_plan_steps
from vigil.recovery.controller import Chooser, RecoveryController
from vigil.recovery.report import render_recovery_report, write_recovery_report

logger = get_logger(__name__)


def _controller(ctx: OperationContext) -> RecoveryController:
    return RecoveryController(ctx.store, ctx.checkpoints())


def _mutating(ctx: OperationContext, op: str, call: Any) -> OperationResult[dict[str, Any]]:
    timer = start_timer()
    if ctx.dry_run:
        return OperationResult.ok({"dry_run": True, "would_run": op}, elapsed_ms=timer.elapsed_ms)
    try:
        result = call()
    except VigilError as exc:
        logger.error("op_failed", op=op, error=exc.message)
        return OperationResult.from_error(exc, elapsed_ms=timer.elapsed_ms)
    return OperationResult.ok(result.to_dict(), elapsed_ms=timer.elapsed_ms, exit_code=result.exit_code)


def auto_recover(ctx: OperationContext) -> OperationResult[dict[str, Any]]:
    return _mutating(ctx, "auto", lambda: _controller(ctx).auto())


def interactive_recover(ctx: OperationContext, chooser: Chooser) -> OperationResult[dict[str, Any]]:
    return _mutating(ctx, "interactive", lambda: _controller(ctx).interactive(chooser))


def recover_point(ctx: OperationContext, checkpoint_id: str) -> OperationResult[dict[str, Any]]:
    return _mutating(ctx, "recover", lambda: _controller(ctx).recover(checkpoint_id))


def smart_recover(ctx: OperationContext) -> OperationResult[dict[str, Any]]:
    """Diagnose and repair, then leave a recovery report in the state directory."""
    result = _mutating(ctx, "smart_recovery", lambda: _controller(ctx).smart_recovery())
    if not result.success or ctx.dry_run or result.data["task_status"] is None:
        return result
    report = recovery_report(ctx, action="smart_recovery", outcome=result.data)
    if report.success:
        result.data["report"] = report.data["path"]
    else:
        result.warnings.append(f"Recovery report not written: {report.error.message}")
    return result


def verify_task(ctx: OperationContext, task_id: str) -> OperationResult[dict[str, Any]]:
    """Integrity report for every checkpoint of *task_id*; exit 1 when none verifies."""
    timer = start_timer()
    try:
        report = _controller(ctx).verify(task_id)
    except VigilError as exc:
        return OperationResult.from_error(exc, elapsed_ms=timer.elapsed_ms)
    exit_code = 0 if report.valid or not report.checkpoints else 1
    return OperationResult.ok(report.to_dict(), elapsed_ms=timer.elapsed_ms, exit_code=exit_code)


def list_points(ctx: OperationContext) -> OperationResult[list[dict[str, Any]]]:
    timer = start_timer()
    try:
        points = _controller(ctx).list_points()
    except VigilError as exc:
        return OperationResult.from_error(exc, elapsed_ms=timer.elapsed_ms)
    return OperationResult.ok([p.to_dict() for p in points], elapsed_ms=timer.elapsed_ms)


def continue_task(ctx: OperationContext, task_id: str) -> OperationResult[dict[str, Any]]:
    """Resume driving *task_id* in this process from wherever the store says it is."""
    timer = start_timer()
    try:
        task = _controller(ctx).continuable(task_id)
        steps = load_plan_steps(task.plan_reference, ctx.settings.default_step_timeout_seconds)
        orchestrator = Orchestrator.from_settings(ctx.settings, steps, store=ctx.store)
        outcome = orchestrator.resume()
    except VigilError as exc:
        logger.error("op_failed", op="continue_task", error=exc.message)
        return OperationResult.from_error(exc, elapsed_ms=timer.elapsed_ms)
    return OperationResult.ok(outcome.to_dict(), elapsed_ms=timer.elapsed_ms, exit_code=outcome.exit_code)


def recovery_report(
    ctx: OperationContext,
    task_id: str | None = None,
    *,
    action: str = "manual_recovery",
    outcome: dict[str, Any] | None = None,
    directory: Path | None = None,
) -> OperationResult[dict[str, Any]]:
    """Write ``RECOVERY_REPORT_<stamp>.md`` for the task into *directory*.

    The report defaults to the state directory and covers task state,
    checkpoint verification, retries, recent transitions and open alerts.
    """
    timer = start_timer()
    try:
        task = ctx.store.read()
        if task_id is not None and task_id != task.id:
            raise RecoveryError(f"Task {task_id} is not the current task ({task.id})").with_context(task_id=task_id)
        now = utc_now()
        markdown = render_recovery_report(
            task,
            action=action,
            generated_at=now,
            outcome=outcome,
            verification=_controller(ctx).verify(task.id),
            retry_stats=RetryEngine(ctx.store, ctx.settings.retry).stats(task),
            transitions=ctx.store.read_log(task.id, limit=10),
            alerts=ctx.store.alerts.list(task_id=task.id, include_acknowledged=False),
        )
        target_dir = directory or ctx.store.state_dir
        target_dir.mkdir(parents=True, exist_ok=True)
        path = write_recovery_report(target_dir, markdown, stamp=now.strftime("%Y%m%d_%H%M%S"))
    except VigilError as exc:
        logger.error("op_failed", op="recovery_report", error=exc.message)
        return OperationResult.from_error(exc, elapsed_ms=timer.elapsed_ms)

    logger.info("recovery_report_written", path=str(path), action=action)
    return OperationResult.ok({"path": str(path), "task_id": task.id}, elapsed_ms=timer.elapsed_ms)
