"""
State Store - the single durable source of truth for a supervised run.

The orchestrator, the health monitor and the recovery controller never share
memory; they share this directory. Every rewrite is atomic and every log is
append-only, so any of them can crash at any instant and the others still
read a consistent picture.

Manifesto:
    Silent reinitialisation erases the recovery trail. A status record that
    cannot be parsed is a critical, halting error: the store reports it and
    stops, and an operator decides what happens next.

Architecture:
    ::

        <state_dir>/
        ├── status.json          Task (atomic replace)
        ├── execution.log.jsonl  transition log (append-only)
        ├── retry.log.jsonl      RetryRecord log (append-only)
        ├── alerts.jsonl         alerts + acknowledgements (append-only)
        ├── health.json          HealthSnapshot ring buffer (monitor-owned)
        ├── heartbeat.json       last heartbeat of the running step
        ├── abort.request        operator abort marker
        ├── checkpoints/         one JSON file per checkpoint
        └── backups/             status copies taken before a recovery

Examples:
    >>> store = StateStore(Path(".vigil"))
    >>> store.write(task)
    >>> store.read().status
    <TaskStatus.RUNNING: 'running'>
    >>> store.append_log(LogEntry(event="step_completed", task_id=task.id, step_index=0))

Guardrails:
    - Never reinitialises a corrupt status record
    - Writers go through :func:`atomic_write_json`; readers never see torn state

Tags:
    state, persistence, atomic-write, vigil

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import json
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any

from vigil.core.errors import StateCorruptError, StateStoreError
from vigil.core.logging import get_logger
from vigil.core.models import (
    HealthSnapshot,
    LogEntry,
    RetryRecord,
    Task,
    TaskStatus,
    validate_task_transition,
)
from vigil.core.timestamps import from_iso8601, to_iso8601, utc_now
from vigil.state.alerts import AlertLog
from vigil.state.files import append_jsonl, atomic_write_json, read_jsonl, rewrite_jsonl, trim_records

logger = get_logger(__name__)

STATUS_SCHEMA_VERSION = 1

STATUS_FILE = "status.json"
EXECUTION_LOG_FILE = "execution.log.jsonl"
RETRY_LOG_FILE = "retry.log.jsonl"
ALERTS_FILE = "alerts.jsonl"
HEALTH_FILE = "health.json"
HEARTBEAT_FILE = "heartbeat.json"
ABORT_FILE = "abort.request"
CHECKPOINTS_DIR = "checkpoints"
BACKUPS_DIR = "backups"


class StateStore:
    """Durable, atomically-written state for one supervised task."""

    def __init__(
        self,
        state_dir: Path | str,
        *,
        alert_cooldown_seconds: float = 300.0,
        backup_keep: int = 20,
    ):
        self.state_dir = Path(state_dir)
        self.backup_keep = backup_keep
        self.alerts = AlertLog(self.state_dir / ALERTS_FILE, cooldown_seconds=alert_cooldown_seconds)

    # ── Paths ────────────────────────────────────────────────────

    @property
    def status_path(self) -> Path:
        return self.state_dir / STATUS_FILE

    @property
    def execution_log_path(self) -> Path:
        return self.state_dir / EXECUTION_LOG_FILE

    @property
    def retry_log_path(self) -> Path:
        return self.state_dir / RETRY_LOG_FILE

    @property
    def health_path(self) -> Path:
        return self.state_dir / HEALTH_FILE

    @property
    def heartbeat_path(self) -> Path:
        return self.state_dir / HEARTBEAT_FILE

    @property
    def abort_path(self) -> Path:
        return self.state_dir / ABORT_FILE

    @property
    def checkpoints_dir(self) -> Path:
        return self.state_dir / CHECKPOINTS_DIR

    @property
    def backups_dir(self) -> Path:
        return self.state_dir / BACKUPS_DIR

    def ensure(self) -> None:
        """Create the directory layout (idempotent)."""
        try:
            self.checkpoints_dir.mkdir(parents=True, exist_ok=True)
            self.backups_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateStoreError(f"Cannot create state directory: {e}", cause=e).with_context(
                path=str(self.state_dir)
            ) from e

    # ── Task status ──────────────────────────────────────────────

    def exists(self) -> bool:
        return self.status_path.exists()

    def read(self) -> Task:
        """Read the current task.

        Raises:
            StateStoreError: If there is no status record or it cannot be read.
            StateCorruptError: If the record exists but does not parse.
        """
        path = self.status_path
        try:
            raw = path.read_bytes()
        except FileNotFoundError as e:
            raise StateStoreError("No task in state directory", cause=e).with_context(
                path=str(path)
            ) from e
        except OSError as e:
            raise StateStoreError(f"Cannot read status: {e}", cause=e).with_context(
                path=str(path)
            ) from e

        try:
            data = json.loads(raw.decode("utf-8"))
            return Task.from_dict(data["task"])
        except (ValueError, KeyError, TypeError) as e:
            raise StateCorruptError(f"Status record is corrupt: {e}", cause=e).with_context(
                path=str(path)
            ) from e

    def read_optional(self) -> Task | None:
        """Like :meth:`read` but ``None`` when no task was ever started."""
        if not self.exists():
            return None
        return self.read()

    def write(self, task: Task) -> None:
        """Atomically replace the status record."""
        task.updated_at = utc_now()
        atomic_write_json(
            self.status_path,
            {
                "schema_version": STATUS_SCHEMA_VERSION,
                "task": task.to_dict(),
                "health_snapshot": HEALTH_FILE,
            },
        )

    def transition(
        self,
        task: Task,
        target: TaskStatus,
        event: str,
        *,
        at: datetime | None = None,
        **details: Any,
    ) -> None:
        """Move *task* to *target*: validate, write status, then append one log entry.

        Raises:
            InvalidTransitionError: If the state machine forbids the move.
        """
        validate_task_transition(task.status, target)
        previous = task.status
        task.status = target
        if target is TaskStatus.RUNNING:
            task.pause_reason = None
        self.write(task)
        self.append_log(
            LogEntry(
                event=event,
                task_id=task.id,
                status=target.value,
                step_index=task.current_step_index,
                details={"from": previous.value, **details},
                timestamp=at or utc_now(),
            )
        )

    def backup_status(self) -> Path | None:
        """Copy the status record into ``backups/`` before a recovery rewrites it.

        Returns the backup path, or ``None`` if there was nothing to back up.
        Oldest backups beyond ``backup_keep`` are pruned.
        """
        if not self.exists():
            return None
        self.backups_dir.mkdir(parents=True, exist_ok=True)
        stamp = utc_now().strftime("%Y%m%dT%H%M%S%fZ")
        target = self.backups_dir / f"status-{stamp}.json"
        try:
            shutil.copy2(self.status_path, target)
        except OSError as e:
            raise StateStoreError(f"Status backup failed: {e}", cause=e).with_context(
                path=str(target)
            ) from e

        backups = sorted(self.backups_dir.glob("status-*.json"))
        for old in backups[: max(0, len(backups) - self.backup_keep)]:
            old.unlink(missing_ok=True)
        logger.info("status_backed_up", path=str(target))
        return target

    def list_backups(self) -> list[Path]:
        return sorted(self.backups_dir.glob("status-*.json"))

    # ── Execution log ────────────────────────────────────────────

    def append_log(self, entry: LogEntry) -> None:
        append_jsonl(self.execution_log_path, entry.to_dict())

    def read_log(self, task_id: str | None = None, limit: int | None = None) -> list[LogEntry]:
        entries = [LogEntry.from_dict(d) for d in read_jsonl(self.execution_log_path)]
        if task_id is not None:
            entries = [e for e in entries if e.task_id == task_id]
        if limit is not None:
            entries = entries[-limit:]
        return entries

    # ── Retry log ────────────────────────────────────────────────

    def append_retry(self, record: RetryRecord) -> None:
        append_jsonl(self.retry_log_path, record.to_dict())

    def read_retries(
        self,
        task_id: str | None = None,
        *,
        step_index: int | None = None,
        since: datetime | None = None,
    ) -> list[RetryRecord]:
        """Retry records in append order, optionally filtered."""
        records = [RetryRecord.from_dict(d) for d in read_jsonl(self.retry_log_path)]
        if task_id is not None:
            records = [r for r in records if r.task_id == task_id]
        if step_index is not None:
            records = [r for r in records if r.step_index == step_index]
        if since is not None:
            records = [r for r in records if r.timestamp >= since]
        return records

    # ── Retention ────────────────────────────────────────────────

    def prune_logs(self, max_records: int, *, keep_task_id: str | None = None, dry_run: bool = False) -> dict[str, int]:
        """Trim the execution, retry and alert logs to about *max_records* each.

        The oldest records go first. Records of *keep_task_id* and open
        alerts are never dropped. Callers must make sure no supervisor
        process is appending while this runs.

        Returns:
            Records removed, keyed by log file name.
        """
        removed: dict[str, int] = {}
        for path in (self.execution_log_path, self.retry_log_path):
            records = read_jsonl(path)
            kept = trim_records(records, max_records, protected=lambda r: r.get("task_id") == keep_task_id)
            removed[path.name] = len(records) - len(kept)
            if removed[path.name] and not dry_run:
                rewrite_jsonl(path, kept)
                logger.info("log_pruned", path=str(path), removed=removed[path.name], kept=len(kept))
        removed[self.alerts.path.name] = self.alerts.prune(max_records, keep_task_id=keep_task_id, dry_run=dry_run)
        return removed

    # ── Heartbeat ────────────────────────────────────────────────

    def write_heartbeat(self, task_id: str, at: datetime | None = None) -> datetime:
        at = at or utc_now()
        atomic_write_json(self.heartbeat_path, {"task_id": task_id, "at": to_iso8601(at)})
        return at

    def read_heartbeat(self, task_id: str | None = None) -> datetime | None:
        """Last heartbeat written for *task_id* (any task if ``None``)."""
        if not self.heartbeat_path.exists():
            return None
        try:
            data = json.loads(self.heartbeat_path.read_text(encoding="utf-8"))
            if task_id is not None and data.get("task_id") != task_id:
                return None
            return from_iso8601(data["at"])
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StateStoreError(f"Heartbeat record unreadable: {e}", cause=e).with_context(
                path=str(self.heartbeat_path)
            ) from e

    # ── Health snapshots ─────────────────────────────────────────

    def write_health(self, snapshots: list[HealthSnapshot]) -> None:
        """Persist the monitor's ring buffer (monitor is the only writer)."""
        atomic_write_json(self.health_path, {"snapshots": [s.to_dict() for s in snapshots]})

    def read_health(self) -> list[HealthSnapshot]:
        if not self.health_path.exists():
            return []
        try:
            data = json.loads(self.health_path.read_text(encoding="utf-8"))
            return [HealthSnapshot.from_dict(d) for d in data.get("snapshots", [])]
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StateStoreError(f"Health record unreadable: {e}", cause=e).with_context(
                path=str(self.health_path)
            ) from e

    def latest_health(self) -> HealthSnapshot | None:
        snapshots = self.read_health()
        return snapshots[-1] if snapshots else None

    # ── Abort requests ───────────────────────────────────────────

    def request_abort(self, reason: str = "operator request") -> None:
        atomic_write_json(self.abort_path, {"reason": reason, "requested_at": to_iso8601(utc_now())})
        logger.warning("abort_requested", reason=reason)

    def abort_request(self) -> dict[str, Any] | None:
        """The pending abort request, if any."""
        if not self.abort_path.exists():
            return None
        try:
            return json.loads(self.abort_path.read_text(encoding="utf-8"))
        except ValueError:
            # A marker that exists still means "abort"; the reason was lost.
            return {"reason": "operator request"}
        except FileNotFoundError:
            return None

    def clear_abort(self) -> None:
        self.abort_path.unlink(missing_ok=True)
