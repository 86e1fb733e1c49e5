"""
CLI: ``vigil run``, ``vigil abort`` and ``vigil alerts``.
"""

from __future__ import annotations

from pathlib import Path

import typer

from vigil.cli.utils import console, make_context, output_paged, output_result, print_table
from vigil.core.models import AlertSeverity

_ALERT_COLUMNS = ["alert_id", "timestamp", "severity", "source", "step_index", "message", "acknowledged"]


def run(
    ctx: typer.Context,
    plan: Path = typer.Option(..., "--plan", "-p", exists=True, dir_okay=False, help="Confirmed plan YAML."),
    with_monitor: bool = typer.Option(False, "--with-monitor", help="Sample health in-process while running."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Validate the plan without running it."),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Start a supervised run of a plan.

    Exits 0 when the task completes, 1 when it pauses for an operator and 2
    when it is aborted.
    """
    from vigil.ops.run import run_plan

    octx = make_context(ctx, dry_run=dry_run)
    output_result(run_plan(octx, plan, with_monitor=with_monitor), as_json=json_out, title="Run")


def abort(
    ctx: typer.Context,
    reason: str = typer.Option("operator request", "--reason", "-r"),
    force: bool = typer.Option(False, "--force", help="Abort directly even if a process may be driving the task."),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Abort the supervised task."""
    from vigil.ops.run import abort_task

    output_result(abort_task(make_context(ctx), reason, force=force), as_json=json_out, title="Abort")


def alerts(
    ctx: typer.Context,
    show_all: bool = typer.Option(False, "--all", "-a", help="Include acknowledged alerts."),
    ack: str | None = typer.Option(None, "--ack", metavar="ALERT_ID", help="Acknowledge an alert."),
    severity: AlertSeverity | None = typer.Option(None, "--severity", "-s", help="Minimum severity."),
    limit: int = typer.Option(50, "--limit", "-n", min=1),
    offset: int = typer.Option(0, "--offset", min=0),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List or acknowledge alerts."""
    from vigil.ops import alerts as ops

    octx = make_context(ctx)
    if ack is not None:
        result = ops.ack_alert(octx, ack)
        if result.success and not json_out:
            console.print(f"[green]✓[/green] Acknowledged alert {ack}")
            return
        output_result(result, as_json=json_out, title="Alert")
        return

    result = ops.list_alerts(
        octx,
        include_acknowledged=show_all,
        min_severity=severity,
        limit=limit,
        offset=offset,
    )
    if result.success and result.data and not json_out:
        print_table(result.data, title="Alerts", columns=_ALERT_COLUMNS)
        console.print(f"\n[dim]Showing {len(result.data)} of {result.total} (offset {result.offset})[/dim]")
        return
    output_paged(result, as_json=json_out, title="Alerts")
