"""Markdown health report for operators (``vigil health --report``)."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import Any

from vigil.checkpoint.manager import CheckpointStatus
from vigil.core.models import Alert, HealthSnapshot
from vigil.health.monitor import HealthReport
from vigil.state.files import atomic_write_text


def _fmt(value: Any, suffix: str = "") -> str:
    if value is None:
        return "n/a"
    if isinstance(value, float):
        return f"{value:.2f}{suffix}"
    return f"{value}{suffix}"


def render_markdown(
    report: HealthReport,
    *,
    history: Sequence[HealthSnapshot] = (),
    alerts: Sequence[Alert] = (),
    retry_stats: dict[str, Any] | None = None,
    checkpoints: Sequence[CheckpointStatus] = (),
) -> str:
    snap = report.snapshot
    task = report.task
    lines = [
        "# Health Report",
        "",
        f"**Generated**: {snap.timestamp.isoformat()}",
        f"**Overall status**: {report.status.value}",
        "",
        "## Task",
        "",
    ]
    if task is None:
        lines.append("No active task.")
    else:
        lines += [
            f"- **Task**: `{task.id}`",
            f"- **Status**: {task.status.value}"
            + (f" ({task.pause_reason.value})" if task.pause_reason else ""),
            f"- **Progress**: {task.current_step_index}/{task.total_steps} steps",
            f"- **Last checkpoint**: {task.last_checkpoint_id or 'none'}",
            f"- **Last error**: {task.last_error or 'none'}",
        ]

    lines += [
        "",
        "## Resources",
        "",
        f"- **Load per CPU**: {_fmt(snap.cpu_load)}",
        f"- **Memory used**: {_fmt(snap.memory_pressure, '%')}",
        f"- **Disk free**: {_fmt(snap.disk_free_ratio * 100 if snap.disk_free_ratio is not None else None, '%')}",
        f"- **Seconds since heartbeat**: {_fmt(snap.seconds_since_heartbeat)}",
        f"- **Consecutive transient failures**: {snap.consecutive_transient_failures}",
        "",
        "## Checks",
        "",
        "| Check | Status | Message |",
        "|---|---|---|",
    ]
    lines += [f"| {c.name} | {c.status.value} | {c.message} |" for c in report.checks]

    if retry_stats:
        lines += [
            "",
            "## Retries",
            "",
            f"- **Failures**: {retry_stats['total_failures']}",
            f"- **Retries used**: {retry_stats['total_retries']}"
            + (f" of {retry_stats['max_total_retries']}" if retry_stats.get("max_total_retries") is not None else ""),
            f"- **Escalations**: {retry_stats['escalations']}",
        ]

    if checkpoints:
        lines += ["", "## Checkpoints", "", "| Checkpoint | Step | Valid | Reason |", "|---|---|---|---|"]
        lines += [
            f"| `{c.checkpoint_id}` | {_fmt(c.step_index)} | {'yes' if c.valid else 'no'} | {c.reason or ''} |"
            for c in checkpoints
        ]

    if alerts:
        lines += ["", "## Open Alerts", ""]
        lines += [f"- [{a.severity.value}] {a.timestamp.isoformat()} {a.message}" for a in alerts]

    if history:
        pressured = sum(1 for s in history if s.resource_pressure)
        lines += [
            "",
            "## Trend",
            "",
            f"- **Samples**: {len(history)} (since {history[0].timestamp.isoformat()})",
            f"- **Samples under resource pressure**: {pressured}",
        ]

    return "\n".join(lines) + "\n"


def write_report(directory: Path, markdown: str, *, stamp: str) -> Path:
    """Write ``HEALTH_REPORT_<stamp>.md`` into *directory* and return its path."""
    path = directory / f"HEALTH_REPORT_{stamp}.md"
    atomic_write_text(path, markdown)
    return path
