"""
Recovery Controller - operator-facing recovery of a paused task.

Every operation is its own method with its own contract instead of a mode
flag threaded through one function:

- :meth:`RecoveryController.verify`        read-only integrity report
- :meth:`RecoveryController.list_points`   read-only listing
- :meth:`RecoveryController.auto`          least-destructive restore, only after retry exhaustion
- :meth:`RecoveryController.interactive`   operator picks a checkpoint
- :meth:`RecoveryController.recover`       explicit restore to a named checkpoint
- :meth:`RecoveryController.retry_current` re-attempt the current step with a fresh budget
- :meth:`RecoveryController.smart_recovery` diagnose, repair the unambiguous case, then auto

Mutating operations back up the status record, move the task to
``recovering`` for their duration, and leave it ``running`` (restored),
``paused`` (verification failed) or ``aborted`` (nothing verifies). If the
controller itself dies mid-restore, the orchestrator finds ``recovering`` on
its next resume and pauses the task for an operator.

Manifesto:
    Restoring onto an older checkpoint re-runs side effects. Automatic
    recovery is therefore only allowed where the reason for the pause is
    well understood (the retry budget ran out); integrity failures, fatal
    errors and interrupted recoveries need a human to look first.

Tags:
    recovery, checkpoint, operator, vigil

Doc-Types:
    - API Reference
    - Recovery Guide
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from vigil.checkpoint.manager import CheckpointManager, CheckpointStatus
from vigil.core.errors import (
    CheckpointIntegrityError,
    NoValidCheckpointError,
    RecoveryError,
    StateCorruptError,
)
from vigil.core.logging import LogContext, get_logger
from vigil.core.models import AlertSeverity, Checkpoint, PauseReason, Task, TaskStatus
from vigil.core.timestamps import utc_now
from vigil.orchestration.orchestrator import exit_code_for
from vigil.state.store import StateStore

logger = get_logger(__name__)

Chooser = Callable[[Sequence[CheckpointStatus]], "str | None"]


@dataclass(frozen=True)
class RecoveryResult:
    """Outcome of one recovery operation."""

    action: str
    success: bool
    task_id: str
    status: TaskStatus
    message: str
    checkpoint_id: str | None = None
    resume_step: int | None = None

    @property
    def exit_code(self) -> int:
        return exit_code_for(self.status) if self.status is not TaskStatus.RUNNING else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "success": self.success,
            "task_id": self.task_id,
            "status": self.status.value,
            "message": self.message,
            "checkpoint_id": self.checkpoint_id,
            "resume_step": self.resume_step,
            "exit_code": self.exit_code,
        }


@dataclass(frozen=True)
class VerificationReport:
    """Read-only integrity picture of a task's checkpoints."""

    task_id: str
    checkpoints: list[CheckpointStatus]

    @property
    def valid(self) -> list[CheckpointStatus]:
        return [c for c in self.checkpoints if c.valid]

    @property
    def invalid(self) -> list[CheckpointStatus]:
        return [c for c in self.checkpoints if not c.valid]

    @property
    def latest_valid_id(self) -> str | None:
        return self.valid[0].checkpoint_id if self.valid else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "total": len(self.checkpoints),
            "valid": len(self.valid),
            "invalid": len(self.invalid),
            "latest_valid": self.latest_valid_id,
            "checkpoints": [c.to_dict() for c in self.checkpoints],
        }


@dataclass
class Diagnosis:
    """Findings of :meth:`RecoveryController.smart_recovery`."""

    findings: list[str] = field(default_factory=list)
    repaired: list[str] = field(default_factory=list)
    recovery: RecoveryResult | None = None
    task_status: TaskStatus | None = None
    store_corrupt: bool = False

    @property
    def exit_code(self) -> int:
        if self.store_corrupt:
            return 2
        if self.recovery is not None:
            return self.recovery.exit_code
        if self.task_status is None or self.task_status in (TaskStatus.RUNNING, TaskStatus.RETRY_PENDING):
            return 0
        return exit_code_for(self.task_status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "findings": self.findings,
            "repaired": self.repaired,
            "task_status": self.task_status.value if self.task_status else None,
            "store_corrupt": self.store_corrupt,
            "recovery": self.recovery.to_dict() if self.recovery else None,
            "exit_code": self.exit_code,
        }


class RecoveryController:
    """Recovery operations on the task in one state directory."""

    def __init__(
        self,
        store: StateStore,
        checkpoints: CheckpointManager | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.checkpoints = checkpoints or CheckpointManager(store)
        self._clock = clock

    # ── Read-only ────────────────────────────────────────────────

    def verify(self, task_id: str | None = None) -> VerificationReport:
        """Verify every checkpoint of the task without mutating anything."""
        task_id = task_id or self.store.read().id
        report = VerificationReport(task_id, self.checkpoints.inspect(task_id))
        logger.info(
            "checkpoints_verified",
            task_id=task_id,
            valid=len(report.valid),
            invalid=len(report.invalid),
        )
        return report

    def list_points(self, task_id: str | None = None) -> list[CheckpointStatus]:
        """Recovery points of the task, newest first, with verification status."""
        return self.checkpoints.inspect(task_id or self.store.read().id)

    # ── Mutating ─────────────────────────────────────────────────

    def auto(self) -> RecoveryResult:
        """Restore the newest valid checkpoint, only after retry-budget exhaustion.

        A task that never completed a step (and so has no checkpoints at all)
        is restarted at step 0. A task with checkpoints but none that verify
        is aborted with a critical alert.

        Raises:
            RecoveryError: If the task is not paused for retry exhaustion.
        """
        task = self._require_paused(self.store.read(), "auto")
        if task.pause_reason is not PauseReason.RETRY_EXHAUSTED:
            raise RecoveryError(
                f"Automatic recovery is only allowed after retry exhaustion; task is paused "
                f"for {task.pause_reason.value if task.pause_reason else 'unknown'}. "
                "Verify and recover explicitly."
            ).with_context(task_id=task.id)

        with LogContext(task_id=task.id):
            if task.current_step_index == 0 and not self.checkpoints.list(task.id):
                return self._restart_first_step(task, "auto")

            try:
                latest = self.checkpoints.require_latest_valid(task.id)
            except NoValidCheckpointError as e:
                return self._abort_no_valid(task, "auto", e)
            return self._restore(task, latest, "auto")

    def interactive(self, chooser: Chooser) -> RecoveryResult:
        """Let *chooser* pick a checkpoint from the inspected candidates.

        The chooser receives every candidate (valid or not, newest first) and
        returns a checkpoint id, or ``None`` to cancel.
        """
        task = self._require_paused(self.store.read(), "interactive")
        candidates = self.checkpoints.inspect(task.id)
        choice = chooser(candidates)
        if choice is None:
            logger.info("recovery_cancelled", task_id=task.id)
            return RecoveryResult("interactive", False, task.id, task.status, "Recovery cancelled by operator")
        return self.recover(choice, action="interactive")

    def recover(self, checkpoint_id: str, *, action: str = "recover") -> RecoveryResult:
        """Restore the task to a named checkpoint (may roll back past later steps).

        Calling it again after it succeeded is a no-op success.

        Raises:
            RecoveryError: If the checkpoint does not exist or belongs to another
                task, or the task is not paused.
        """
        task = self.store.read()
        try:
            checkpoint = self.checkpoints.get(checkpoint_id)
        except CheckpointIntegrityError as e:
            checkpoint = None
            unreadable = e.message
        else:
            unreadable = None

        if checkpoint is not None and checkpoint.task_id != task.id:
            raise RecoveryError(
                f"Checkpoint {checkpoint_id} belongs to task {checkpoint.task_id}, not {task.id}"
            ).with_context(task_id=task.id, checkpoint_id=checkpoint_id)

        if (
            checkpoint is not None
            and task.status is TaskStatus.RUNNING
            and task.restored_from == checkpoint_id
            and task.current_step_index == checkpoint.resume_step
        ):
            return RecoveryResult(
                action,
                True,
                task.id,
                task.status,
                f"Already restored to {checkpoint_id}",
                checkpoint_id,
                checkpoint.resume_step,
            )

        if checkpoint is None and unreadable is None:
            raise RecoveryError(f"No checkpoint {checkpoint_id}").with_context(
                task_id=task.id, checkpoint_id=checkpoint_id
            )

        task = self._require_paused(task, action)
        with LogContext(task_id=task.id):
            if checkpoint is None:
                self._begin(task, action, checkpoint_id)
                return self._fail_verification(task, checkpoint_id, unreadable or "unreadable", action)
            return self._restore(task, checkpoint, action)

    def retry_current(self, task_id: str) -> RecoveryResult:
        """Re-attempt the current step with a fresh attempt budget.

        Only allowed when nothing is skipped or repeated: the newest valid
        checkpoint must resume exactly at the current step, or no step has
        completed yet.

        Raises:
            RecoveryError: If *task_id* is not the current task, the task is
                not paused, or the current step is not backed by the newest
                valid checkpoint.
        """
        task = self.store.read()
        if task.id != task_id:
            raise RecoveryError(f"Task {task_id} is not the current task ({task.id})").with_context(task_id=task_id)
        task = self._require_paused(task, "retry")

        with LogContext(task_id=task.id):
            if task.current_step_index == 0 and not self.checkpoints.list(task.id):
                return self._restart_first_step(task, "retry")

            latest = self.checkpoints.latest_valid(task.id)
            if latest is None or latest.resume_step != task.current_step_index:
                raise RecoveryError(
                    f"Step {task.current_step_index} is not backed by the newest valid checkpoint; "
                    "use verify and recover instead"
                ).with_context(task_id=task.id, step_index=task.current_step_index)
            return self._restore(task, latest, "retry")

    def continuable(self, task_id: str) -> Task:
        """The task, if *task_id* names it and it can be resumed as-is.

        Raises:
            RecoveryError: If the id does not match or the task needs recovery first.
        """
        task = self.store.read()
        if task.id != task_id:
            raise RecoveryError(f"Task {task_id} is not the current task ({task.id})").with_context(task_id=task_id)
        if task.status not in (TaskStatus.RUNNING, TaskStatus.RETRY_PENDING, TaskStatus.RECOVERING):
            raise RecoveryError(
                f"Task {task_id} is {task.status.value}; it cannot be continued"
            ).with_context(task_id=task_id)
        return task

    def smart_recovery(self) -> Diagnosis:
        """Diagnose the state directory, repair the unambiguous case, then try auto.

        The only repair made is a stale ``recovering`` status (the controller
        died mid-restore), which becomes ``paused``. A corrupt status record
        is reported and left untouched.
        """
        diagnosis = Diagnosis()
        try:
            task = self.store.read_optional()
        except StateCorruptError as e:
            diagnosis.store_corrupt = True
            diagnosis.findings.append(f"Status record is corrupt: {e.message}; manual repair required")
            self.store.alerts.raise_alert(
                AlertSeverity.CRITICAL,
                f"State store is corrupt: {e.message}",
                task_id=None,
                source="recovery",
            )
            return diagnosis

        if task is None:
            diagnosis.findings.append("No task in state directory")
            return diagnosis

        diagnosis.task_status = task.status
        if not 0 <= task.current_step_index <= task.total_steps:
            diagnosis.findings.append(
                f"Step index {task.current_step_index} is outside the plan (0..{task.total_steps}); manual repair required"
            )
            return diagnosis

        report = VerificationReport(task.id, self.checkpoints.inspect(task.id))
        diagnosis.findings.append(
            f"{len(report.valid)} valid and {len(report.invalid)} invalid checkpoint(s)"
        )

        if task.status is TaskStatus.RECOVERING:
            task.pause_reason = PauseReason.RECOVERY_INTERRUPTED
            self.store.transition(
                task,
                TaskStatus.PAUSED,
                "recovery_repaired",
                at=self._clock(),
                reason=PauseReason.RECOVERY_INTERRUPTED.value,
            )
            diagnosis.repaired.append("Stale 'recovering' status reset to 'paused'")
            diagnosis.task_status = task.status
            logger.warning("stale_recovery_repaired", task_id=task.id)

        if task.status is TaskStatus.PAUSED:
            if task.pause_reason is PauseReason.RETRY_EXHAUSTED:
                diagnosis.recovery = self.auto()
                diagnosis.task_status = diagnosis.recovery.status
            else:
                reason = task.pause_reason.value if task.pause_reason else "unknown"
                diagnosis.findings.append(
                    f"Task paused for {reason}; verify checkpoints and recover explicitly"
                )
        elif task.status in (TaskStatus.RUNNING, TaskStatus.RETRY_PENDING):
            diagnosis.findings.append(f"Task is {task.status.value}; continue it with 'recovery --continue {task.id}'")
        elif task.is_terminal:
            diagnosis.findings.append(f"Task is {task.status.value}; nothing to recover")
        return diagnosis

    # ── Internals ────────────────────────────────────────────────

    def _require_paused(self, task: Task, action: str) -> Task:
        if task.status is not TaskStatus.PAUSED:
            raise RecoveryError(
                f"Cannot {action}: task {task.id} is {task.status.value}, not paused"
            ).with_context(task_id=task.id)
        return task

    def _begin(self, task: Task, action: str, checkpoint_id: str | None) -> None:
        self.store.backup_status()
        self.store.transition(
            task, TaskStatus.RECOVERING, "recovery_started", at=self._clock(), action=action, checkpoint_id=checkpoint_id
        )
        logger.info("recovery_started", action=action, checkpoint_id=checkpoint_id)

    def _restore(self, task: Task, checkpoint: Checkpoint, action: str) -> RecoveryResult:
        self._begin(task, action, checkpoint.checkpoint_id)
        problem = self.checkpoints.check(checkpoint)
        if problem is not None:
            return self._fail_verification(task, checkpoint.checkpoint_id, problem, action)

        task.current_step_index = checkpoint.resume_step
        task.last_checkpoint_id = checkpoint.checkpoint_id
        task.restored_from = checkpoint.checkpoint_id
        task.step_started_at = self._clock()
        task.last_error = None
        self.store.transition(
            task,
            TaskStatus.RUNNING,
            "recovery_completed",
            at=self._clock(),
            action=action,
            checkpoint_id=checkpoint.checkpoint_id,
            resume_step=checkpoint.resume_step,
        )
        self.store.alerts.raise_alert(
            AlertSeverity.INFO,
            f"Task restored to checkpoint {checkpoint.checkpoint_id}; resuming at step {checkpoint.resume_step}",
            task_id=task.id,
            source="recovery",
            checkpoint_id=checkpoint.checkpoint_id,
            step_index=checkpoint.resume_step,
        )
        logger.info("recovery_completed", action=action, checkpoint_id=checkpoint.checkpoint_id, resume_step=checkpoint.resume_step)
        return RecoveryResult(
            action,
            True,
            task.id,
            task.status,
            f"Restored to {checkpoint.checkpoint_id}; resuming at step {checkpoint.resume_step}",
            checkpoint.checkpoint_id,
            checkpoint.resume_step,
        )

    def _restart_first_step(self, task: Task, action: str) -> RecoveryResult:
        self._begin(task, action, None)
        task.step_started_at = self._clock()
        task.last_error = None
        self.store.transition(task, TaskStatus.RUNNING, "recovery_completed", at=self._clock(), action=action, resume_step=0)
        logger.info("recovery_completed", action=action, resume_step=0)
        return RecoveryResult(action, True, task.id, task.status, "No step had completed; restarting at step 0", None, 0)

    def _fail_verification(self, task: Task, checkpoint_id: str, problem: str, action: str) -> RecoveryResult:
        task.pause_reason = PauseReason.INTEGRITY_FAILURE
        self.store.transition(
            task,
            TaskStatus.PAUSED,
            "recovery_failed",
            at=self._clock(),
            action=action,
            checkpoint_id=checkpoint_id,
            problem=problem,
            valid_checkpoints=[cp.checkpoint_id for cp in self.checkpoints.valid_checkpoints(task.id)],
        )
        self.store.alerts.raise_alert(
            AlertSeverity.CRITICAL,
            f"Checkpoint {checkpoint_id} failed verification ({problem}); task remains paused",
            task_id=task.id,
            source="recovery",
            checkpoint_id=checkpoint_id,
            step_index=task.current_step_index,
        )
        logger.error("recovery_failed", action=action, checkpoint_id=checkpoint_id, problem=problem)
        return RecoveryResult(action, False, task.id, task.status, f"Checkpoint {checkpoint_id} failed verification: {problem}", checkpoint_id)

    def _abort_no_valid(self, task: Task, action: str, error: NoValidCheckpointError) -> RecoveryResult:
        self._begin(task, action, None)
        task.last_error = error.message
        self.store.transition(task, TaskStatus.ABORTED, "task_aborted", at=self._clock(), action=action, reason="no_valid_checkpoint")
        self.store.alerts.raise_alert(
            AlertSeverity.CRITICAL,
            f"{error.message}; recovery is impossible and the task was aborted",
            task_id=task.id,
            source="recovery",
            step_index=task.current_step_index,
        )
        logger.critical("no_valid_checkpoint", task_id=task.id)
        return RecoveryResult(action, False, task.id, task.status, "No valid checkpoint; task aborted")


__all__ = [
    "Chooser",
    "Diagnosis",
    "RecoveryController",
    "RecoveryResult",
    "VerificationReport",
]
