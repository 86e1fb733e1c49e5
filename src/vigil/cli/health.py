"""
CLI: ``vigil health`` - health checks and reports.
"""

from __future__ import annotations

from pathlib import Path

import typer

from vigil.cli.utils import make_context, output_result, print_table, require_one_mode


def health(
    ctx: typer.Context,
    check: bool = typer.Option(False, "--check", help="One sample; exit 0 healthy, 1 otherwise."),
    monitor: bool = typer.Option(False, "--monitor", help="Sample on the configured interval."),
    report: bool = typer.Option(False, "--report", help="Write HEALTH_REPORT_<stamp>.md."),
    output_dir: Path | None = typer.Option(None, "--output-dir", "-o", file_okay=False, help="Where --report writes."),
    max_samples: int | None = typer.Option(None, "--max-samples", min=1, help="Stop --monitor after N samples."),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Check the supervised task's health."""
    mode = require_one_mode({"--check": check, "--monitor": monitor, "--report": report})
    from vigil.ops import health as ops

    octx = make_context(ctx)

    if mode == "--check":
        result = ops.check_health(octx)
        if result.success and not json_out:
            data = result.data
            print_table(data["checks"], title=f"Health: {data['status']}", columns=["name", "status", "message"])
            if result.exit_code:
                raise typer.Exit(code=result.exit_code)
            return
        output_result(result, as_json=json_out, title="Health")
    elif mode == "--report":
        output_result(ops.generate_report(octx, output_dir), as_json=json_out, title="Health report")
    else:
        from vigil.cli.monitor import run_sampling_loop

        run_sampling_loop(octx, max_samples)
