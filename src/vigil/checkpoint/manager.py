"""
Checkpoint Manager - immutable, integrity-checked recovery points.

A checkpoint for step N records that step N completed: its context blob
(the step's output state plus the artifact paths it produced) is hashed with
SHA-256 and written atomically to ``checkpoints/<checkpoint_id>.json``.
Resuming from it starts at step N+1.

Manifesto:
    Restarting a day-long job from step zero duplicates every external side
    effect it already performed. Recovery must therefore degrade gracefully
    to an *older valid* checkpoint, and must refuse loudly when none
    verifies, never silently start over.

    - **Immutable:** written once, never edited, removed only by cleanup
    - **Verifiable:** hash of the blob plus existence of every artifact
    - **Ordered:** per-task ``sequence`` orders checkpoints, not wall clock
    - **Tolerant:** an unreadable file is an invalid checkpoint, not a crash

Architecture:
    ::

        create(task_id, step, ctx, artifacts)
            │  blob = canonical_json({"context": ctx, "artifacts": [...]})
            │  hash = sha256(blob)
            ▼
        checkpoints/<ulid>.json  (atomic write)
            │
            ▼
        latest_valid(task_id)  newest sequence first, skip invalid

Examples:
    >>> manager = CheckpointManager(store)
    >>> cp = manager.create(task.id, 4, {"rows": 1200}, artifacts=["out/part4.csv"])
    >>> manager.verify(cp)
    True
    >>> manager.latest_valid(task.id).resume_step
    5

Tags:
    checkpoint, recovery, integrity, sha256, vigil

Doc-Types:
    - API Reference
    - Recovery Guide
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from vigil.core.errors import CheckpointIntegrityError, NoValidCheckpointError, ValidationError
from vigil.core.hashing import canonical_json, sha256_hex
from vigil.core.logging import get_logger
from vigil.core.models import Checkpoint
from vigil.core.timestamps import generate_ulid, utc_now
from vigil.state.files import atomic_write_json
from vigil.state.store import StateStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class CheckpointStatus:
    """Verification result for one checkpoint file, for operator inspection."""

    checkpoint_id: str
    task_id: str | None
    step_index: int | None
    sequence: int | None
    created_at: datetime | None
    valid: bool
    reason: str | None = None

    @property
    def resume_step(self) -> int | None:
        return None if self.step_index is None else self.step_index + 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "checkpoint_id": self.checkpoint_id,
            "task_id": self.task_id,
            "step_index": self.step_index,
            "resume_step": self.resume_step,
            "sequence": self.sequence,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "valid": self.valid,
            "reason": self.reason,
        }


class CheckpointManager:
    """Creates, verifies and lists checkpoints under ``<state_dir>/checkpoints``.

    Relative artifact paths are resolved against *artifact_root* (the current
    working directory when not given).
    """

    def __init__(self, store: StateStore, *, artifact_root: Path | None = None):
        self.store = store
        self.artifact_root = artifact_root

    @property
    def directory(self) -> Path:
        return self.store.checkpoints_dir

    def _path(self, checkpoint_id: str) -> Path:
        return self.directory / f"{checkpoint_id}.json"

    def resolve_artifact(self, artifact: str) -> Path:
        path = Path(artifact)
        if not path.is_absolute() and self.artifact_root is not None:
            path = self.artifact_root / path
        return path

    # ── Create ───────────────────────────────────────────────────

    def create(
        self,
        task_id: str,
        step_index: int,
        context: Any,
        *,
        artifacts: Sequence[str] = (),
    ) -> Checkpoint:
        """Persist a recovery point recording that *step_index* completed.

        Raises:
            ValidationError: If *context* is not JSON-serialisable.
            StateStoreError: If the checkpoint file cannot be written.
        """
        artifact_list = [str(a) for a in artifacts]
        try:
            blob = canonical_json({"context": context, "artifacts": artifact_list})
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"Checkpoint context is not JSON-serialisable: {e}", cause=e
            ).with_context(task_id=task_id, step_index=step_index) from e

        existing = self.list(task_id)
        sequence = (existing[-1].sequence + 1) if existing else 1
        checkpoint = Checkpoint(
            checkpoint_id=generate_ulid(),
            task_id=task_id,
            step_index=step_index,
            sequence=sequence,
            created_at=utc_now(),
            context_blob=blob,
            integrity_hash=sha256_hex(blob),
            artifacts=tuple(artifact_list),
        )
        atomic_write_json(self._path(checkpoint.checkpoint_id), checkpoint.to_dict())
        logger.info(
            "checkpoint_created",
            task_id=task_id,
            checkpoint_id=checkpoint.checkpoint_id,
            step_index=step_index,
            sequence=sequence,
        )
        return checkpoint

    # ── Verify ───────────────────────────────────────────────────

    def check(self, checkpoint: Checkpoint) -> str | None:
        """Return why *checkpoint* is invalid, or ``None`` when it verifies."""
        if sha256_hex(checkpoint.context_blob) != checkpoint.integrity_hash:
            return "hash_mismatch"
        try:
            blob_artifacts = json.loads(checkpoint.context_blob).get("artifacts", [])
        except (ValueError, AttributeError):
            return "blob_damaged"
        if list(blob_artifacts) != list(checkpoint.artifacts):
            return "artifact_list_mismatch"
        for artifact in blob_artifacts:
            if not self.resolve_artifact(artifact).exists():
                return f"missing_artifact: {artifact}"
        return None

    def verify(self, checkpoint: Checkpoint) -> bool:
        """Recompute the hash and confirm every referenced artifact exists."""
        return self.check(checkpoint) is None

    # ── Read ─────────────────────────────────────────────────────

    def get(self, checkpoint_id: str) -> Checkpoint | None:
        """Load a checkpoint by id; ``None`` if no such file.

        Raises:
            CheckpointIntegrityError: If the file exists but cannot be parsed.
        """
        path = self._path(checkpoint_id)
        if not path.exists():
            return None
        try:
            return Checkpoint.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise CheckpointIntegrityError(
                f"Checkpoint file unreadable: {e}", cause=e
            ).with_context(checkpoint_id=checkpoint_id, path=str(path)) from e

    def _scan(self) -> Iterable[tuple[str, Checkpoint | None, str | None]]:
        if not self.directory.exists():
            return
        for path in sorted(self.directory.glob("*.json")):
            checkpoint_id = path.stem
            try:
                yield checkpoint_id, self.get(checkpoint_id), None
            except CheckpointIntegrityError as e:
                logger.warning("checkpoint_unreadable", checkpoint_id=checkpoint_id, error=e.message)
                yield checkpoint_id, None, f"unreadable: {e.message}"

    def list(self, task_id: str) -> list[Checkpoint]:
        """Readable checkpoints of *task_id*, oldest first."""
        checkpoints = [cp for _, cp, _ in self._scan() if cp is not None and cp.task_id == task_id]
        return sorted(checkpoints, key=lambda cp: cp.sequence)

    def inspect(self, task_id: str) -> list[CheckpointStatus]:
        """Every checkpoint file with its verification status, newest first.

        Unreadable files cannot be attributed to a task and are always listed.
        """
        statuses: list[CheckpointStatus] = []
        for checkpoint_id, cp, error in self._scan():
            if cp is None:
                statuses.append(
                    CheckpointStatus(checkpoint_id, None, None, None, None, valid=False, reason=error)
                )
                continue
            if cp.task_id != task_id:
                continue
            reason = self.check(cp)
            statuses.append(
                CheckpointStatus(
                    checkpoint_id=cp.checkpoint_id,
                    task_id=cp.task_id,
                    step_index=cp.step_index,
                    sequence=cp.sequence,
                    created_at=cp.created_at,
                    valid=reason is None,
                    reason=reason,
                )
            )
        return sorted(statuses, key=lambda s: s.sequence if s.sequence is not None else -1, reverse=True)

    def valid_checkpoints(self, task_id: str) -> list[Checkpoint]:
        """Checkpoints that verify, newest first."""
        return [cp for cp in reversed(self.list(task_id)) if self.verify(cp)]

    def latest_valid(self, task_id: str) -> Checkpoint | None:
        """Newest checkpoint that verifies; older invalid ones are skipped."""
        for cp in reversed(self.list(task_id)):
            reason = self.check(cp)
            if reason is None:
                return cp
            logger.warning(
                "checkpoint_skipped",
                task_id=task_id,
                checkpoint_id=cp.checkpoint_id,
                step_index=cp.step_index,
                reason=reason,
            )
        return None

    def require_latest_valid(self, task_id: str) -> Checkpoint:
        """Like :meth:`latest_valid` but a missing answer is an error.

        Raises:
            NoValidCheckpointError: If the task has no checkpoint that verifies.
        """
        latest = self.latest_valid(task_id)
        if latest is None:
            total = len(self.list(task_id))
            raise NoValidCheckpointError(
                f"None of the {total} checkpoint(s) of task {task_id} verifies"
            ).with_context(task_id=task_id, path=str(self.directory))
        return latest

    # ── Cleanup ──────────────────────────────────────────────────

    def cleanup(self, task_id: str, *, keep: int = 10, protect: Iterable[str] = ()) -> list[str]:
        """Delete superseded checkpoints beyond the newest *keep*.

        Ids in *protect* (e.g. the task's current checkpoint) and the newest
        valid checkpoint are never removed.

        Returns:
            Ids of the removed checkpoints.
        """
        if keep < 1:
            raise ValueError("keep must be >= 1")
        protected = set(protect)
        latest = self.latest_valid(task_id)
        if latest is not None:
            protected.add(latest.checkpoint_id)

        removed: list[str] = []
        for cp in self.list(task_id)[:-keep]:
            if cp.checkpoint_id in protected:
                continue
            self._path(cp.checkpoint_id).unlink(missing_ok=True)
            removed.append(cp.checkpoint_id)

        if removed:
            logger.info("checkpoints_cleaned", task_id=task_id, removed=len(removed), kept=keep)
        return removed
