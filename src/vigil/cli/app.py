"""
Root Typer application for the vigil CLI.

Every surface is one command with mutually exclusive mode flags
(``vigil recovery --auto``), so scripts written against the flag style keep
working. :func:`main` is the console entry point and owns the process exit
code contract:

    0  success / task completed
    1  recoverable: task paused, recovery refused, or an unhealthy check
    2  unrecoverable: task aborted or the state store is corrupt
    3  invalid invocation: missing/conflicting modes, unknown options, bad config
"""

from __future__ import annotations

import sys
from pathlib import Path

import typer
from typer import Typer

from vigil import __version__
from vigil.cli.health import health
from vigil.cli.monitor import monitor
from vigil.cli.recovery import recovery
from vigil.cli.retry import retry
from vigil.cli.run import abort, alerts, run
from vigil.cli.utils import CliState, err_console, usage_error
from vigil.core.errors import ConfigError
from vigil.core.logging import configure_logging
from vigil.core.settings import load_settings
from vigil.orchestration.orchestrator import EXIT_USAGE

_PARSER_USAGE_EXIT = 2

app = Typer(
    name="vigil",
    help="vigil - supervise long-running tasks with checkpoints, retries and recovery.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Root callback ────────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"vigil {__version__}")
        raise typer.Exit()


@app.callback()
def root(
    ctx: typer.Context,
    state_dir: Path | None = typer.Option(
        None,
        "--state-dir",
        "-d",
        file_okay=False,
        help="State directory (default .vigil, env VIGIL_STATE_DIR).",
    ),
    config: Path | None = typer.Option(None, "--config", "-c", dir_okay=False, help="YAML settings file."),
    log_level: str | None = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING or ERROR."),
    json_logs: bool | None = typer.Option(None, "--json-logs/--console-logs", help="Log format (auto by default)."),
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """vigil CLI: run, watch and recover a supervised task."""
    try:
        settings = load_settings(config, state_dir=state_dir, log_level=log_level, json_logs=json_logs)
    except ConfigError as e:
        usage_error(e.message)
    configure_logging(settings.log_level, json_format=settings.json_logs)
    ctx.obj = CliState(settings=settings)


# ── Commands ─────────────────────────────────────────────────────────────

app.command("run")(run)
app.command("abort")(abort)
app.command("monitor")(monitor)
app.command("recovery")(recovery)
app.command("retry")(retry)
app.command("health")(health)
app.command("alerts")(alerts)


def main() -> None:
    """Console entry point: run the app and map failures onto exit codes."""
    try:
        rv = app(standalone_mode=False)
    except typer.Abort:
        err_console.print("Aborted.")
        sys.exit(1)
    except typer.TyperException as e:
        # Parser errors (unknown option or command, bad parameter) carry exit code 2.
        err_console.print(f"[bold red]Error[/bold red]: {e.format_message()}")
        sys.exit(EXIT_USAGE if e.exit_code == _PARSER_USAGE_EXIT else e.exit_code)
    sys.exit(rv if isinstance(rv, int) else 0)
