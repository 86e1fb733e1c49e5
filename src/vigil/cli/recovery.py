"""
CLI: ``vigil recovery`` - bring a paused task back.

Exactly one mode; see :mod:`vigil.recovery.controller` for each contract.
"""

from __future__ import annotations

from collections.abc import Sequence

import typer

from vigil.checkpoint.manager import CheckpointStatus
from vigil.cli.utils import console, make_context, output_result, print_table, require_one_mode

_POINT_COLUMNS = ["checkpoint_id", "step_index", "resume_step", "sequence", "created_at", "valid", "reason"]


def recovery(
    ctx: typer.Context,
    auto: bool = typer.Option(False, "--auto", help="Restore the newest valid checkpoint (after retry exhaustion)."),
    interactive: bool = typer.Option(False, "--interactive", help="Pick a checkpoint to restore."),
    smart: bool = typer.Option(False, "--smart-recovery", help="Diagnose, repair a stale recovery, then --auto."),
    continue_id: str | None = typer.Option(None, "--continue", metavar="TASK_ID", help="Resume driving the task."),
    recover_point: str | None = typer.Option(None, "--recover-point", metavar="CHECKPOINT_ID", help="Restore a named checkpoint."),
    verify: str | None = typer.Option(None, "--verify", metavar="TASK_ID", help="Verify every checkpoint (read-only)."),
    list_points: bool = typer.Option(False, "--list-points", help="List recovery points (read-only)."),
    report: str | None = typer.Option(None, "--report", metavar="TASK_ID", help="Write a markdown recovery report."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what a mutating mode would do."),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Recover the supervised task."""
    mode = require_one_mode(
        {
            "--auto": auto,
            "--interactive": interactive,
            "--smart-recovery": smart,
            "--continue": continue_id,
            "--recover-point": recover_point,
            "--verify": verify,
            "--list-points": list_points,
            "--report": report,
        }
    )
    from vigil.ops import recovery as ops

    octx = make_context(ctx, dry_run=dry_run)

    if mode == "--auto":
        output_result(ops.auto_recover(octx), as_json=json_out, title="Recovery")
    elif mode == "--interactive":
        output_result(ops.interactive_recover(octx, _prompt_for_checkpoint), as_json=json_out, title="Recovery")
    elif mode == "--smart-recovery":
        output_result(ops.smart_recover(octx), as_json=json_out, title="Smart recovery")
    elif mode == "--continue":
        output_result(ops.continue_task(octx, continue_id), as_json=json_out, title="Run")
    elif mode == "--recover-point":
        output_result(ops.recover_point(octx, recover_point), as_json=json_out, title="Recovery")
    elif mode == "--verify":
        result = ops.verify_task(octx, verify)
        if result.success and not json_out:
            summary = result.data
            console.print(
                f"[bold]Task {summary['task_id']}[/bold]: {summary['valid']} valid, {summary['invalid']} invalid"
            )
            if summary["checkpoints"]:
                print_table(summary["checkpoints"], title="Checkpoints", columns=_POINT_COLUMNS)
            if result.exit_code:
                raise typer.Exit(code=result.exit_code)
            return
        output_result(result, as_json=json_out, title="Verification")
    elif mode == "--report":
        output_result(ops.recovery_report(octx, report), as_json=json_out, title="Recovery report")
    else:
        result = ops.list_points(octx)
        if result.success and result.data and not json_out:
            print_table(result.data, title="Recovery points", columns=_POINT_COLUMNS)
            return
        output_result(result, as_json=json_out, title="Recovery points")


def _prompt_for_checkpoint(candidates: Sequence[CheckpointStatus]) -> str | None:
    if not candidates:
        console.print("[yellow]No checkpoints to choose from.[/yellow]")
        return None
    print_table(
        [{"#": i, **c.to_dict()} for i, c in enumerate(candidates, start=1)],
        title="Recovery points (newest first)",
        columns=["#", *_POINT_COLUMNS],
    )
    answer = typer.prompt("Restore which checkpoint? (number or id, empty to cancel)", default="", show_default=False).strip()
    if not answer:
        return None
    if answer.isdigit() and 1 <= int(answer) <= len(candidates):
        return candidates[int(answer) - 1].checkpoint_id
    return answer
