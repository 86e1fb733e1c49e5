"""
CLI utility helpers: context creation, exit codes and output formatting.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from vigil.core.settings import VigilSettings
from vigil.ops.context import OperationContext
from vigil.ops.result import OperationResult, PagedResult
from vigil.orchestration.orchestrator import EXIT_ABORTED, EXIT_OK, EXIT_PAUSED, EXIT_USAGE

console = Console()
err_console = Console(stderr=True)

# Error codes that mean the state directory itself cannot be trusted.
_UNRECOVERABLE_CODES = frozenset({"STATE_CORRUPT", "STATE_STORE"})
_USAGE_CODES = frozenset({"CONFIG", "VALIDATION"})


@dataclass
class CliState:
    """What the root callback hands every command through ``ctx.obj``."""

    settings: VigilSettings


# ── Context helpers ──────────────────────────────────────────────────────


def make_context(ctx: typer.Context, *, dry_run: bool = False) -> OperationContext:
    """Create an ``OperationContext`` for a CLI command from the root callback state."""
    state: CliState = ctx.find_object(CliState)
    return OperationContext.from_settings(state.settings, caller="cli", dry_run=dry_run)


def usage_error(message: str) -> NoReturn:
    """Report an invalid invocation and exit 3."""
    err_console.print(f"[bold red]Usage error:[/bold red] {message}")
    raise typer.Exit(code=EXIT_USAGE)


def require_one_mode(modes: dict[str, Any]) -> str:
    """Name of the single mode flag that was given; exits 3 on none or several."""
    chosen = [name for name, value in modes.items() if value not in (None, False)]
    if not chosen:
        usage_error("one of " + ", ".join(modes) + " is required")
    if len(chosen) > 1:
        usage_error("conflicting modes: " + ", ".join(chosen))
    return chosen[0]


def exit_code_of(result: OperationResult) -> int:
    """Exit code for a result: the operation's own, or derived from the error."""
    if result.exit_code is not None:
        return result.exit_code
    if result.success:
        return EXIT_OK
    code = result.error.code if result.error else ""
    if code in _UNRECOVERABLE_CODES:
        return EXIT_ABORTED
    if code in _USAGE_CODES:
        return EXIT_USAGE
    return EXIT_PAUSED


# ── Output helpers ───────────────────────────────────────────────────────


def _to_dict(obj: Any) -> dict[str, Any]:
    """Convert dataclass / pydantic model / dict to plain dict."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def output_result(
    result: OperationResult,
    *,
    as_json: bool = False,
    title: str = "",
) -> None:
    """Render an ``OperationResult`` and exit with its exit code when non-zero."""
    if not result.success:
        err = result.error
        msg = err.message if err else "Unknown error"
        code = err.code if err else "ERROR"
        if as_json:
            console.print_json(json.dumps(result.to_dict(), default=str))
        else:
            err_console.print(f"[bold red]Error[/bold red] ({code}): {msg}")
        raise typer.Exit(code=exit_code_of(result))

    data = result.data
    if as_json:
        payload = _to_dict(data) if not isinstance(data, list | tuple) else [_to_dict(d) for d in data]
        console.print_json(json.dumps(payload, default=str))
    elif isinstance(data, list):
        if not data:
            console.print("[dim]No items.[/dim]")
        else:
            print_table(data, title=title)
    else:
        print_dict(_to_dict(data), title=title)

    for warning in result.warnings:
        err_console.print(f"[yellow]Warning:[/yellow] {warning}")

    exit_code = exit_code_of(result)
    if exit_code != EXIT_OK:
        raise typer.Exit(code=exit_code)


def output_paged(
    result: PagedResult,
    *,
    as_json: bool = False,
    title: str = "",
) -> None:
    """Render a ``PagedResult`` with pagination info."""
    if not result.success:
        output_result(result, as_json=as_json, title=title)
        return

    items = result.data or []

    if as_json:
        payload = {
            "items": [_to_dict(d) for d in items],
            "total": result.total,
            "limit": result.limit,
            "offset": result.offset,
            "has_more": result.has_more,
        }
        console.print_json(json.dumps(payload, default=str))
        return

    if not items:
        console.print("[dim]No items.[/dim]")
        return

    print_table(items, title=title)
    console.print(f"\n[dim]Showing {len(items)} of {result.total} (offset {result.offset})[/dim]")


def print_table(items: list, *, title: str = "", columns: list[str] | None = None) -> None:
    """Render a list of dataclasses/dicts as a Rich table."""
    first = _to_dict(items[0])
    columns = columns or list(first)
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in columns:
        table.add_column(col, overflow="fold")
    for item in items:
        d = _to_dict(item)
        table.add_row(*(_cell(d.get(col)) for col in columns))
    console.print(table)


def print_dict(data: dict[str, Any], *, title: str = "") -> None:
    """Render a single dict as key-value pairs."""
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        console.print(f"  [cyan]{k}[/cyan]: {_cell(v)}")


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, dict | list):
        return json.dumps(value, default=str)
    return str(value)
