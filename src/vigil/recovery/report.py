"""Markdown recovery report (``vigil recovery --report`` and ``--smart-recovery``).

Written next to the state it describes so that whoever picks the task up
later can see what was found, what was done, and where the run stands.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

from vigil.core.models import Alert, LogEntry, Task
from vigil.recovery.controller import VerificationReport
from vigil.state.files import atomic_write_text


def render_recovery_report(
    task: Task,
    *,
    action: str,
    generated_at: datetime,
    outcome: dict[str, Any] | None = None,
    verification: VerificationReport | None = None,
    retry_stats: dict[str, Any] | None = None,
    transitions: Sequence[LogEntry] = (),
    alerts: Sequence[Alert] = (),
) -> str:
    lines = [
        "# Recovery Report",
        "",
        f"**Generated**: {generated_at.isoformat()}",
        f"**Task**: `{task.id}`",
        f"**Recovery type**: {action}",
        "",
        "## Task State",
        "",
        f"- **Status**: {task.status.value}" + (f" ({task.pause_reason.value})" if task.pause_reason else ""),
        f"- **Plan**: {task.plan_reference}",
        f"- **Progress**: {task.current_step_index}/{task.total_steps} steps",
        f"- **Last checkpoint**: {task.last_checkpoint_id or 'none'}",
        f"- **Restored from**: {task.restored_from or 'none'}",
        f"- **Last error**: {task.last_error or 'none'}",
    ]

    if outcome:
        lines += ["", "## Outcome", ""]
        if "findings" in outcome:
            lines += [f"- Found: {f}" for f in outcome["findings"]] or ["- Nothing unusual found"]
            lines += [f"- Repaired: {r}" for r in outcome["repaired"]]
            outcome = outcome.get("recovery") or {}
        if "message" in outcome:
            lines.append(f"- {outcome['message']}")
            if outcome.get("checkpoint_id"):
                lines.append(f"- **Checkpoint**: `{outcome['checkpoint_id']}`, resuming at step {outcome['resume_step']}")

    if verification is not None:
        lines += [
            "",
            "## Checkpoints",
            "",
            f"{len(verification.valid)} valid, {len(verification.invalid)} invalid; "
            f"newest valid: {verification.latest_valid_id or 'none'}",
        ]
        if verification.checkpoints:
            lines += ["", "| Checkpoint | Step | Valid | Reason |", "|---|---|---|---|"]
            lines += [
                f"| `{c.checkpoint_id}` | {c.step_index if c.step_index is not None else 'n/a'} "
                f"| {'yes' if c.valid else 'no'} | {c.reason or ''} |"
                for c in verification.checkpoints
            ]

    if retry_stats:
        lines += [
            "",
            "## Retries",
            "",
            f"- **Failures**: {retry_stats['total_failures']}",
            f"- **Retries used**: {retry_stats['total_retries']}",
            f"- **Escalations**: {retry_stats['escalations']}",
            f"- **Last error**: {retry_stats['last_error'] or 'none'}",
        ]

    if transitions:
        lines += ["", "## Recent Transitions", ""]
        lines += [
            f"- {e.timestamp.isoformat()} {e.event} -> {e.status or ''} (step {e.step_index})"
            for e in transitions
        ]

    if alerts:
        lines += ["", "## Open Alerts", ""]
        lines += [f"- [{a.severity.value}] {a.timestamp.isoformat()} {a.message}" for a in alerts]

    return "\n".join(lines) + "\n"


def write_recovery_report(directory: Path, markdown: str, *, stamp: str) -> Path:
    """Write ``RECOVERY_REPORT_<stamp>.md`` into *directory* and return its path."""
    path = directory / f"RECOVERY_REPORT_{stamp}.md"
    atomic_write_text(path, markdown)
    return path
