"""
Run operations.

Start a supervised run from a plan file (optionally with the health monitor
sampling in a background thread) and abort the current task.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

from vigil.core.errors import VigilError
from vigil.core.logging import get_logger
from vigil.core.models import TaskStatus
from vigil.ops.context import OperationContext
from vigil.ops.health import build_monitor
from vigil.ops.result import OperationResult, start_timer
from vigil.orchestration.orchestrator import Orchestrator
from vigil.orchestration.plan import PlanSpec

logger = get_logger(__name__)

# Statuses in which no process is driving the task, so abort can act directly.
_IDLE_STATUSES = frozenset({TaskStatus.PLANNING, TaskStatus.PAUSED, TaskStatus.RECOVERING})


def run_plan(
    ctx: OperationContext,
    plan_path: Path,
    *,
    with_monitor: bool = False,
) -> OperationResult[dict[str, Any]]:
    """Validate *plan_path* and drive it to completion, pause or abort."""
    timer = start_timer()
    try:
        plan = PlanSpec.from_yaml_file(plan_path)
        steps = plan.to_steps(ctx.settings.default_step_timeout_seconds)
        if ctx.dry_run:
            return OperationResult.ok(
                {"dry_run": True, "plan": plan.name, "steps": [s.name for s in steps]},
                elapsed_ms=timer.elapsed_ms,
            )
        orchestrator = Orchestrator.from_settings(ctx.settings, steps, store=ctx.store)

        stop = threading.Event()
        monitor_thread: threading.Thread | None = None
        if with_monitor:
            monitor_thread = threading.Thread(
                target=build_monitor(ctx).run, args=(stop,), name="vigil-health", daemon=True
            )
            monitor_thread.start()
        try:
            outcome = orchestrator.start(str(plan_path.resolve()))
        finally:
            stop.set()
            if monitor_thread is not None:
                monitor_thread.join(timeout=5)
    except VigilError as exc:
        logger.error("op_failed", op="run_plan", error=exc.message)
        return OperationResult.from_error(exc, elapsed_ms=timer.elapsed_ms)

    return OperationResult.ok(outcome.to_dict(), elapsed_ms=timer.elapsed_ms, exit_code=outcome.exit_code)


def abort_task(ctx: OperationContext, reason: str, *, force: bool = False) -> OperationResult[dict[str, Any]]:
    """Abort the current task.

    A task no process is driving (paused, planning, or a stale recovery) is
    aborted immediately. A live task gets an abort request the driving process
    honours at its next step boundary or backoff poll; *force* aborts it
    directly instead, for a driver that is known to be dead.
    """
    timer = start_timer()
    try:
        task = ctx.store.read()
        if task.is_terminal:
            return OperationResult.ok(
                {"task_id": task.id, "status": task.status.value, "message": f"Task already {task.status.value}"},
                elapsed_ms=timer.elapsed_ms,
                exit_code=0,
            )
        if ctx.dry_run:
            return OperationResult.ok({"dry_run": True, "would_abort": task.id}, elapsed_ms=timer.elapsed_ms)

        if task.status in _IDLE_STATUSES or force:
            outcome = Orchestrator(ctx.store, []).abort(reason)
            return OperationResult.ok(outcome.to_dict(), elapsed_ms=timer.elapsed_ms, exit_code=0)

        ctx.store.request_abort(reason)
    except VigilError as exc:
        logger.error("op_failed", op="abort_task", error=exc.message)
        return OperationResult.from_error(exc, elapsed_ms=timer.elapsed_ms)

    return OperationResult.ok(
        {
            "task_id": task.id,
            "status": task.status.value,
            "message": "Abort requested; the running process stops at its next step boundary",
        },
        elapsed_ms=timer.elapsed_ms,
        exit_code=0,
    )
