"""
CLI: ``vigil monitor`` - watch a supervised run.

Exactly one mode:

- ``--interface``  live terminal view, refreshed until Ctrl-C
- ``--background`` sampling loop for a separate (daemonised) process
- ``--dashboard``  write ``MONITOR_DASHBOARD.md`` into the state directory
- ``--check``      one health sample; exit 0 healthy, 1 otherwise
"""

from __future__ import annotations

import threading
import time

import typer
from rich.console import Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from vigil.cli.utils import console, make_context, output_result, require_one_mode
from vigil.ops.context import OperationContext


def monitor(
    ctx: typer.Context,
    interface: bool = typer.Option(False, "--interface", help="Live terminal view."),
    background: bool = typer.Option(False, "--background", help="Run the health sampling loop."),
    dashboard: bool = typer.Option(False, "--dashboard", help="Write the markdown dashboard."),
    check: bool = typer.Option(False, "--check", help="One-shot health check."),
    refresh: float = typer.Option(2.0, "--refresh", min=0.1, help="Seconds between --interface redraws."),
    max_samples: int | None = typer.Option(None, "--max-samples", min=1, help="Stop --background after N samples."),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Watch the supervised task."""
    mode = require_one_mode(
        {"--interface": interface, "--background": background, "--dashboard": dashboard, "--check": check}
    )
    octx = make_context(ctx)

    if mode == "--check":
        from vigil.ops.health import check_health

        output_result(check_health(octx), as_json=json_out, title="Health")
    elif mode == "--dashboard":
        from vigil.ops.status import write_dashboard

        output_result(write_dashboard(octx), as_json=json_out, title="Dashboard")
    elif mode == "--background":
        run_sampling_loop(octx, max_samples)
    else:
        _interface(octx, refresh)


def run_sampling_loop(octx: OperationContext, max_samples: int | None) -> None:
    from vigil.ops.health import build_monitor

    stop = threading.Event()
    monitor_ = build_monitor(octx)
    console.print(
        f"[dim]Sampling every {monitor_.thresholds.interval_seconds:g}s into {octx.store.health_path}; Ctrl-C stops[/dim]"
    )
    try:
        taken = monitor_.run(stop, max_samples=max_samples)
    except KeyboardInterrupt:
        stop.set()
        taken = len(monitor_.snapshots)
    console.print(f"[green]✓[/green] Monitor stopped after {taken} sample(s)")


def _interface(octx: OperationContext, refresh: float) -> None:
    from vigil.ops.status import get_dashboard

    try:
        with Live(_render(get_dashboard(octx).data), console=console, refresh_per_second=4) as live:
            while True:
                time.sleep(refresh)
                result = get_dashboard(octx)
                live.update(_render(result.data if result.success else None, result.error.message if result.error else None))
    except KeyboardInterrupt:
        console.print("[dim]Monitor closed.[/dim]")


def _render(data: dict | None, error: str | None = None) -> Panel:
    if error is not None or data is None:
        return Panel(f"[bold red]{error or 'State unavailable'}[/bold red]", title="vigil monitor")
    task = data.get("task")
    if task is None:
        return Panel("[dim]No task in state directory.[/dim]", title="vigil monitor")

    summary = Table.grid(padding=(0, 2))
    summary.add_column(style="cyan")
    summary.add_column()
    summary.add_row("Task", task["id"])
    summary.add_row("Status", _status_markup(task["status"]))
    summary.add_row("Step", f"{task['current_step_index']}/{task['total_steps']} ({data['progress_percent']}%)")
    heartbeat = data.get("seconds_since_heartbeat")
    summary.add_row("Heartbeat", f"{heartbeat:.0f}s ago" if heartbeat is not None else "n/a")
    summary.add_row("Checkpoints", str(data["checkpoints"]))
    summary.add_row("Open alerts", f"{data['open_alerts']} ({data['critical_alerts']} critical)")
    if task.get("pause_reason"):
        summary.add_row("Pause reason", task["pause_reason"])
    if task.get("last_error"):
        summary.add_row("Last error", task["last_error"])

    health = data.get("health")
    if health:
        summary.add_row(
            "Host",
            f"load/cpu {health.get('cpu_load')}  mem {health.get('memory_pressure')}%  "
            f"disk free {health.get('disk_free_ratio')}",
        )

    recent = Table(title="Recent activity", expand=True, pad_edge=False)
    for col in ("time", "event", "status", "step"):
        recent.add_column(col, overflow="fold")
    for entry in data.get("recent_log") or []:
        recent.add_row(entry["timestamp"], entry["event"], entry.get("status") or "", str(entry.get("step_index")))

    return Panel(Group(summary, recent), title="vigil monitor")


def _status_markup(status: str) -> str:
    colour = {
        "running": "green",
        "completed": "green",
        "retry_pending": "yellow",
        "recovering": "yellow",
        "paused": "red",
        "aborted": "red",
    }.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"
