"""
Orchestration Façade - the supervised execution loop.

Drives a confirmed plan step by step. After every successful step a
checkpoint is made durable *before* the task advances; every failure goes
through the Retry Engine, whose record is durable *before* the backoff
starts. Anything the retry budget does not absorb ends in ``paused`` with a
critical alert and an execution-log entry that says what failed and which
checkpoints can be trusted.

Manifesto:
    Unattended execution means silent failure is worse than a loud pause.

    - **Never skip a checkpoint** between steps
    - **Never re-enter running** without a fresh success or a verified restore
    - **Re-derive, don't remember:** after any crash, ``resume()`` rebuilds
      the picture from the state store alone

Architecture:
    ::

        start(plan_reference) / resume()
                 │
                 ▼
        ┌──────────────── step loop ────────────────┐
        │ abort requested? ──────────────► ABORTED  │
        │ run step (timeout + heartbeat thread)     │
        │   ok   → checkpoint → advance index       │
        │   fail → RetryEngine.decide               │
        │            retry    → RETRY_PENDING       │
        │                       wait (abortable)    │
        │                       → RUNNING           │
        │            escalate → PAUSED + alert      │
        └───────────────────────────────────────────┘
                 │ all steps done
                 ▼
             COMPLETED

Examples:
    >>> orchestrator = Orchestrator(store, steps, policy=RetryPolicy(initial_delay=5))
    >>> outcome = orchestrator.start("plans/nightly.yaml")
    >>> outcome.status, outcome.exit_code
    (<TaskStatus.COMPLETED: 'completed'>, 0)

Tags:
    orchestration, state-machine, retry, checkpoint, vigil

Doc-Types:
    - API Reference
    - Architecture Documentation
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from vigil.checkpoint.manager import CheckpointManager
from vigil.core.errors import (
    CheckpointIntegrityError,
    ConfigError,
    FatalStepError,
    StateStoreError,
    StepTimeoutError,
    TaskConflictError,
)
from vigil.core.logging import LogContext, get_logger
from vigil.core.models import (
    AlertSeverity,
    Checkpoint,
    LogEntry,
    PauseReason,
    RetryAction,
    Task,
    TaskStatus,
)
from vigil.core.timestamps import seconds_since, utc_now
from vigil.execution.retry import Classifier, RetryDecision, RetryEngine, RetryPolicy, summarize_error
from vigil.execution.steps import CallableStep, Step, StepContext, StepResult
from vigil.state.store import StateStore

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_PAUSED = 1
EXIT_ABORTED = 2
EXIT_USAGE = 3


def exit_code_for(status: TaskStatus) -> int:
    """Process exit code for a task left in *status*."""
    if status is TaskStatus.COMPLETED:
        return EXIT_OK
    if status is TaskStatus.ABORTED:
        return EXIT_ABORTED
    return EXIT_PAUSED


@dataclass(frozen=True)
class RunOutcome:
    """Where a run (or resume) left the task."""

    task_id: str
    status: TaskStatus
    step_index: int
    message: str

    @property
    def exit_code(self) -> int:
        return exit_code_for(self.status)

    @classmethod
    def of(cls, task: Task, message: str) -> RunOutcome:
        return cls(task.id, task.status, task.current_step_index, message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "step_index": self.step_index,
            "exit_code": self.exit_code,
            "message": self.message,
        }


class _Heartbeat:
    """Background thread refreshing the heartbeat file while a step runs."""

    def __init__(self, beat: Callable[[], None], interval: float):
        self._beat = beat
        self._interval = interval
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, name="vigil-heartbeat", daemon=True)

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._beat()
            except StateStoreError as e:
                # The step thread hits the same store on its next write and halts there.
                logger.error("heartbeat_write_failed", error=e.message)
                return

    def __enter__(self) -> _Heartbeat:
        self._beat()
        self._thread.start()
        return self

    def __exit__(self, *args: Any) -> None:
        self._stop.set()
        self._thread.join(timeout=self._interval + 1)


class Orchestrator:
    """Supervises one task through its plan.

    Args:
        store: State store for the run
        steps: The plan, in order
        checkpoints: Checkpoint manager (defaults to one on *store*)
        policy: Retry policy (ignored when *retry_engine* is given)
        classifier: Job-supplied transient/fatal predicate
        retry_engine: Pre-built engine (tests inject one with a seeded rng)
        heartbeat_interval: Seconds between heartbeat writes while a step runs
        abort_poll_seconds: Longest a backoff wait goes without checking for abort
        pressure_max_age_seconds: Health snapshots older than this are ignored
        sleep / clock: Injectable for tests
    """

    def __init__(
        self,
        store: StateStore,
        steps: Sequence[Step],
        *,
        checkpoints: CheckpointManager | None = None,
        policy: RetryPolicy | None = None,
        classifier: Classifier | None = None,
        retry_engine: RetryEngine | None = None,
        heartbeat_interval: float = 30.0,
        abort_poll_seconds: float = 1.0,
        pressure_max_age_seconds: float = 600.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.steps = list(steps)
        self.checkpoints = checkpoints or CheckpointManager(store)
        self.retry = retry_engine or RetryEngine(store, policy, classifier=classifier, clock=clock)
        self.heartbeat_interval = heartbeat_interval
        self.abort_poll_seconds = abort_poll_seconds
        self.pressure_max_age_seconds = pressure_max_age_seconds
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._abort = threading.Event()
        self._abort_reason: str | None = None

    @classmethod
    def from_settings(cls, settings: Any, steps: Sequence[Step], **kwargs: Any) -> Orchestrator:
        """Build from :class:`~vigil.core.settings.VigilSettings`."""
        store = kwargs.pop("store", None) or StateStore(
            settings.state_dir,
            alert_cooldown_seconds=settings.health.alert_cooldown_seconds,
            backup_keep=settings.checkpoint.backup_keep,
        )
        return cls(
            store,
            steps,
            policy=settings.retry,
            heartbeat_interval=settings.heartbeat_interval_seconds,
            abort_poll_seconds=settings.abort_poll_seconds,
            pressure_max_age_seconds=settings.health.interval_seconds * 10,
            **kwargs,
        )

    # ── Public operations ────────────────────────────────────────

    def start(self, plan_reference: str) -> RunOutcome:
        """Create a task for the plan and run it.

        A finished (completed/aborted) task in the same state directory is
        archived to ``backups/`` first.

        Raises:
            TaskConflictError: If a non-terminal task already exists.
            ConfigError: If the plan has no steps.
        """
        if not self.steps:
            raise ConfigError("Plan has no steps")
        self.store.ensure()
        existing = self.store.read_optional()
        if existing is not None:
            if not existing.is_terminal:
                raise TaskConflictError(
                    f"Task {existing.id} is {existing.status.value}; resume or abort it first"
                ).with_context(task_id=existing.id)
            self.store.backup_status()
        self.store.clear_abort()

        task = Task.create(plan_reference, total_steps=len(self.steps))
        task.step_started_at = self._clock()
        with LogContext(task_id=task.id):
            self._transition(task, TaskStatus.RUNNING, "task_started", plan_reference=plan_reference)
            logger.info("task_started", total_steps=task.total_steps, plan_reference=plan_reference)
            return self._guarded(task, self._drive)

    def resume(self) -> RunOutcome:
        """Continue the task from whatever the state store says.

        - ``running``: continue at ``current_step_index`` (adopting a
          checkpoint that was written but not yet recorded on the task)
        - ``retry_pending``: wait out the rest of the recorded backoff
        - ``recovering``: the controller died mid-restore, pause for an operator
        - ``paused`` / terminal: nothing to do
        """
        task = self.store.read()
        with LogContext(task_id=task.id):
            if task.is_terminal:
                return RunOutcome.of(task, f"Task already {task.status.value}")
            if task.status is TaskStatus.PAUSED:
                return RunOutcome.of(task, f"Task is paused ({_reason(task)}); recovery required")
            if task.status is TaskStatus.RECOVERING:
                return self._guarded(task, self._pause_interrupted_recovery)
            if task.total_steps != len(self.steps):
                raise ConfigError(
                    f"Plan has {len(self.steps)} steps but task {task.id} expects {task.total_steps}"
                ).with_context(task_id=task.id)
            if task.status is TaskStatus.PLANNING:
                self._transition(task, TaskStatus.RUNNING, "task_started", plan_reference=task.plan_reference)
                return self._guarded(task, self._drive)
            logger.info("task_resumed", status=task.status.value, step_index=task.current_step_index)
            return self._guarded(task, self._resume_live)

    def request_abort(self, reason: str = "operator request") -> None:
        """Ask the running loop to abort at the next step boundary or backoff poll."""
        self._abort_reason = reason
        self._abort.set()
        self.store.request_abort(reason)

    def abort(self, reason: str = "operator request") -> RunOutcome:
        """Abort a task that no process is currently driving."""
        task = self.store.read()
        if task.is_terminal:
            return RunOutcome.of(task, f"Task already {task.status.value}")
        self._abort_reason = reason
        with LogContext(task_id=task.id):
            return self._do_abort(task)

    # ── Loop ─────────────────────────────────────────────────────

    def _guarded(self, task: Task, body: Callable[[Task], RunOutcome]) -> RunOutcome:
        try:
            return body(task)
        except StateStoreError as e:
            logger.critical("state_store_failure", error=e.message, path=e.context.path)
            self.store.alerts.raise_alert(
                AlertSeverity.CRITICAL,
                f"State store failure, execution halted: {e.message}",
                task_id=task.id,
                source="store",
                step_index=task.current_step_index,
            )
            raise

    def _resume_live(self, task: Task) -> RunOutcome:
        if task.status is TaskStatus.RETRY_PENDING:
            remaining = self._remaining_backoff(task)
            logger.info("backoff_resumed", remaining_seconds=round(remaining, 3))
            if not self._wait(task, remaining):
                return self._do_abort(task)
            self._transition(task, TaskStatus.RUNNING, "retry_started", attempt=self.retry.attempts_so_far(task))
        else:
            self._adopt_unrecorded_checkpoint(task)
        return self._drive(task)

    def _drive(self, task: Task) -> RunOutcome:
        previous = self._previous_context(task)
        if isinstance(previous, RunOutcome):
            return previous

        while task.current_step_index < len(self.steps):
            if self._abort_requested():
                return self._do_abort(task)

            index = task.current_step_index
            step = self.steps[index]
            attempt = self.retry.attempts_so_far(task)
            logger.info("step_started", step_index=index, step_name=step.name, attempt=attempt)

            try:
                result = self._run_step(task, step, attempt, previous)
                self._check_artifacts(task, step, result)
                checkpoint = self.checkpoints.create(
                    task.id, index, result.context, artifacts=result.artifacts
                )
            except Exception as e:  # noqa: BLE001
                outcome = self._handle_failure(task, step, e)
                if outcome is not None:
                    return outcome
                continue

            self._advance(task, checkpoint, step)
            previous = result.context

        self._transition(task, TaskStatus.COMPLETED, "task_completed")
        self.store.alerts.raise_alert(
            AlertSeverity.INFO,
            f"Task completed ({task.total_steps} steps)",
            task_id=task.id,
            source="orchestrator",
            checkpoint_id=task.last_checkpoint_id,
        )
        logger.info("task_completed", total_steps=task.total_steps)
        return RunOutcome.of(task, "All steps completed")

    def _run_step(self, task: Task, step: Step, attempt: int, previous: Any) -> StepResult:
        ctx = StepContext(
            task_id=task.id,
            step_index=task.current_step_index,
            step_name=step.name,
            attempt=attempt,
            previous=previous,
            heartbeat=lambda: self._beat(task),
        )
        with _Heartbeat(lambda: self._beat(task), self.heartbeat_interval):
            return step.run(ctx)

    def _check_artifacts(self, task: Task, step: Step, result: StepResult) -> None:
        missing = [
            a for a in result.artifacts if not self.checkpoints.resolve_artifact(a).exists()
        ]
        if missing:
            raise FatalStepError(
                f"Step '{step.name}' reported success but artifacts are missing: {', '.join(missing)}"
            ).with_context(task_id=task.id, step_index=task.current_step_index, step_name=step.name)

    def _advance(self, task: Task, checkpoint: Checkpoint, step: Step) -> None:
        task.last_checkpoint_id = checkpoint.checkpoint_id
        task.current_step_index = checkpoint.resume_step
        task.step_started_at = self._clock()
        task.last_error = None
        self._save(task)
        self.store.append_log(
            LogEntry(
                event="checkpoint_saved",
                task_id=task.id,
                status=task.status.value,
                step_index=checkpoint.step_index,
                details={"checkpoint_id": checkpoint.checkpoint_id, "step_name": step.name},
                timestamp=self._clock(),
            )
        )
        logger.info(
            "step_completed",
            step_index=checkpoint.step_index,
            step_name=step.name,
            checkpoint_id=checkpoint.checkpoint_id,
        )

    def _handle_failure(self, task: Task, step: Step, error: Exception) -> RunOutcome | None:
        """Retry (returns ``None`` to loop again) or pause/abort (returns the outcome)."""
        if isinstance(error, StateStoreError):
            raise error
        summary = summarize_error(error)
        task.last_error = summary
        decision = self.retry.decide(task, error, under_pressure=self._under_pressure())

        if decision.action is RetryAction.RETRY:
            self._transition(
                task,
                TaskStatus.RETRY_PENDING,
                "retry_scheduled",
                attempt=decision.attempt_number,
                delay_seconds=round(decision.delay_seconds, 3),
                error_class=decision.error_class.value,
                error=summary,
            )
            logger.warning(
                "step_failed_retrying",
                step_index=task.current_step_index,
                step_name=step.name,
                attempt=decision.attempt_number,
                delay_seconds=round(decision.delay_seconds, 3),
                error=summary,
            )
            if isinstance(error, StepTimeoutError) and isinstance(step, CallableStep):
                # Threads cannot be killed; the abandoned attempt may still be writing.
                logger.warning(
                    "timed_out_step_still_running",
                    step_index=task.current_step_index,
                    step_name=step.name,
                    detail="the retry may overlap the abandoned attempt unless the step honours ctx.cancelled",
                )
            if not self._wait(task, decision.delay_seconds):
                return self._do_abort(task)
            self._transition(task, TaskStatus.RUNNING, "retry_started", attempt=decision.attempt_number + 1)
            return None

        return self._pause_after_failure(task, step, decision)

    def _pause_after_failure(self, task: Task, step: Step, decision: RetryDecision) -> RunOutcome:
        reason = PauseReason.FATAL_ERROR if decision.reason == "fatal_error" else PauseReason.RETRY_EXHAUSTED
        valid = [cp.checkpoint_id for cp in self.checkpoints.valid_checkpoints(task.id)]
        task.pause_reason = reason
        self._transition(
            task,
            TaskStatus.PAUSED,
            "task_paused",
            reason=reason.value,
            step_name=step.name,
            error_class=decision.error_class.value,
            error=task.last_error,
            attempts=decision.attempt_number + 1,
            valid_checkpoints=valid,
        )
        self.store.alerts.raise_alert(
            AlertSeverity.CRITICAL,
            f"Task paused at step {task.current_step_index} ({step.name}): {reason.value}, "
            f"{decision.error_class.value} error after {decision.attempt_number + 1} attempt(s): {task.last_error}",
            task_id=task.id,
            source="orchestrator",
            checkpoint_id=valid[0] if valid else None,
            step_index=task.current_step_index,
        )
        logger.error(
            "task_paused",
            reason=reason.value,
            step_index=task.current_step_index,
            error_class=decision.error_class.value,
            valid_checkpoints=len(valid),
        )
        return RunOutcome.of(task, f"Paused at step {task.current_step_index}: {reason.value}")

    def _pause_interrupted_recovery(self, task: Task) -> RunOutcome:
        task.pause_reason = PauseReason.RECOVERY_INTERRUPTED
        self._transition(task, TaskStatus.PAUSED, "task_paused", reason=PauseReason.RECOVERY_INTERRUPTED.value)
        self.store.alerts.raise_alert(
            AlertSeverity.CRITICAL,
            f"Recovery of task {task.id} was interrupted; verify checkpoints and recover explicitly",
            task_id=task.id,
            source="orchestrator",
            step_index=task.current_step_index,
        )
        return RunOutcome.of(task, "Recovery was interrupted; task paused")

    def _pause_integrity(self, task: Task, checkpoint_id: str | None, problem: str) -> RunOutcome:
        task.pause_reason = PauseReason.INTEGRITY_FAILURE
        self._transition(
            task,
            TaskStatus.PAUSED,
            "task_paused",
            reason=PauseReason.INTEGRITY_FAILURE.value,
            checkpoint_id=checkpoint_id,
            problem=problem,
            valid_checkpoints=[cp.checkpoint_id for cp in self.checkpoints.valid_checkpoints(task.id)],
        )
        self.store.alerts.raise_alert(
            AlertSeverity.CRITICAL,
            f"Checkpoint {checkpoint_id} failed verification ({problem}); task paused",
            task_id=task.id,
            source="orchestrator",
            checkpoint_id=checkpoint_id,
            step_index=task.current_step_index,
        )
        return RunOutcome.of(task, f"Checkpoint {checkpoint_id} failed verification")

    def _do_abort(self, task: Task) -> RunOutcome:
        request = self.store.abort_request() or {}
        reason = self._abort_reason or request.get("reason") or "operator request"
        self._transition(task, TaskStatus.ABORTED, "task_aborted", reason=reason)
        self.store.clear_abort()
        self.store.alerts.raise_alert(
            AlertSeverity.WARNING,
            f"Task aborted at step {task.current_step_index}: {reason}",
            task_id=task.id,
            source="orchestrator",
            step_index=task.current_step_index,
        )
        logger.warning("task_aborted", reason=reason, step_index=task.current_step_index)
        return RunOutcome.of(task, f"Aborted: {reason}")

    # ── Helpers ──────────────────────────────────────────────────

    def _previous_context(self, task: Task) -> Any:
        """Context of the checkpoint the task resumes from, or a pause outcome if it fails to verify."""
        if task.last_checkpoint_id is None:
            return None
        try:
            checkpoint = self.checkpoints.get(task.last_checkpoint_id)
        except CheckpointIntegrityError as e:
            return self._pause_integrity(task, task.last_checkpoint_id, e.message)
        if checkpoint is None:
            return self._pause_integrity(task, task.last_checkpoint_id, "missing")
        problem = self.checkpoints.check(checkpoint)
        if problem is not None:
            return self._pause_integrity(task, checkpoint.checkpoint_id, problem)
        return checkpoint.context

    def _adopt_unrecorded_checkpoint(self, task: Task) -> None:
        """Advance past a step whose checkpoint became durable just before a crash."""
        for cp in self.checkpoints.valid_checkpoints(task.id):
            if cp.step_index == task.current_step_index and cp.created_at >= task.step_started_at:
                logger.warning("checkpoint_adopted", checkpoint_id=cp.checkpoint_id, step_index=cp.step_index)
                self._advance(task, cp, self.steps[cp.step_index])
                return

    def _remaining_backoff(self, task: Task) -> float:
        records = self.store.read_retries(
            task.id, step_index=task.current_step_index, since=task.step_started_at
        )
        pending = [r for r in records if r.decision is RetryAction.RETRY]
        if not pending:
            return 0.0
        last = pending[-1]
        due = last.timestamp + timedelta(milliseconds=last.delay_before_ms)
        return max(0.0, (due - self._clock()).total_seconds())

    def _wait(self, task: Task, seconds: float) -> bool:
        """Backoff wait in abortable chunks. Returns ``False`` if aborted."""
        remaining = seconds
        while remaining > 0:
            if self._abort_requested():
                return False
            chunk = min(self.abort_poll_seconds, remaining)
            self._sleep(chunk)
            remaining -= chunk
            self._beat(task)
        return not self._abort_requested()

    def _abort_requested(self) -> bool:
        return self._abort.is_set() or self.store.abort_request() is not None

    def _under_pressure(self) -> bool:
        try:
            snapshot = self.store.latest_health()
        except StateStoreError as e:
            logger.warning("health_snapshot_unreadable", error=e.message)
            return False
        if snapshot is None or not snapshot.resource_pressure:
            return False
        age = seconds_since(snapshot.timestamp, self._clock())
        return age is not None and age <= self.pressure_max_age_seconds

    def _beat(self, task: Task) -> None:
        self.store.write_heartbeat(task.id, self._clock())

    def _save(self, task: Task) -> None:
        with self._lock:
            task.last_heartbeat_at = self._clock()
            self.store.write(task)

    def _transition(self, task: Task, target: TaskStatus, event: str, **details: Any) -> None:
        with self._lock:
            task.last_heartbeat_at = self._clock()
            self.store.transition(task, target, event, at=self._clock(), **details)


def _reason(task: Task) -> str:
    return task.pause_reason.value if task.pause_reason else "unknown"


def load_plan_steps(plan_reference: str, default_timeout: float | None = None) -> list[Step]:
    """Rebuild the steps of a task from its plan reference (a plan YAML path)."""
    from vigil.orchestration.plan import PlanSpec

    return PlanSpec.from_yaml_file(Path(plan_reference)).to_steps(default_timeout)
