"""
CLI: ``vigil retry`` - retry history and operator-forced retries.
"""

from __future__ import annotations

import time

import typer

from vigil.cli.utils import console, make_context, output_paged, output_result, require_one_mode


def retry(
    ctx: typer.Context,
    monitor: bool = typer.Option(False, "--monitor", help="Show recent retry decisions."),
    retry_id: str | None = typer.Option(None, "--retry", metavar="TASK_ID", help="Re-attempt the current step of a paused task."),
    stats: bool = typer.Option(False, "--stats", help="Retry totals and budget use."),
    cleanup: bool = typer.Option(False, "--cleanup", help="Remove superseded checkpoints, old log records and old reports."),
    keep: int | None = typer.Option(None, "--keep", min=1, help="Checkpoints --cleanup keeps."),
    follow: bool = typer.Option(False, "--follow", "-f", help="Keep polling with --monitor until Ctrl-C."),
    limit: int = typer.Option(20, "--limit", "-n", min=1),
    dry_run: bool = typer.Option(False, "--dry-run"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Inspect and drive retries."""
    mode = require_one_mode({"--monitor": monitor, "--retry": retry_id, "--stats": stats, "--cleanup": cleanup})
    from vigil.ops import retry as ops

    octx = make_context(ctx, dry_run=dry_run)

    if mode == "--stats":
        output_result(ops.get_stats(octx), as_json=json_out, title="Retry statistics")
    elif mode == "--retry":
        output_result(ops.retry_task(octx, retry_id), as_json=json_out, title="Retry")
    elif mode == "--cleanup":
        output_result(ops.cleanup(octx, keep=keep), as_json=json_out, title="Cleanup")
    else:
        first = ops.list_retries(octx, limit=limit)
        output_paged(first, as_json=json_out, title="Retry log")
        if not follow:
            return
        seen = first.total
        try:
            while True:
                time.sleep(5)
                result = ops.list_retries(octx, limit=limit)
                if result.success and result.total != seen:
                    seen = result.total
                    output_paged(result, as_json=json_out, title="Retry log")
        except KeyboardInterrupt:
            console.print("[dim]Stopped.[/dim]")
