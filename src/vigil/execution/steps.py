"""Units of work the orchestrator supervises.

A step receives a :class:`StepContext` and returns either a
:class:`StepResult` or any JSON-serialisable value (taken as the step's
context). Whatever it returns becomes the checkpoint blob for that step, and
is handed back as ``ctx.previous`` to the next step, including after a
restore.

Two step kinds cover the plan file:

- :class:`CallableStep` runs a Python callable (``"module:qualname"``)
- :class:`CommandStep` runs a subprocess command

Both enforce their timeout and raise typed errors the Retry Engine can
classify.
"""

from __future__ import annotations

import importlib
import os
import shlex
import subprocess
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from vigil.core.errors import FatalStepError, StepTimeoutError
from vigil.execution.timeout import run_with_timeout

OUTPUT_TAIL_CHARS = 2000


def resolve_callable_ref(ref: str) -> Callable[..., Any]:
    """Import and return the callable identified by ``'module:qualname'``.

    Raises:
        ValueError: If the ref has no ``:``.
        ImportError: If the module cannot be found.
        AttributeError: If the qualname path is invalid.
        TypeError: If the target is not callable.
    """
    module_path, _, attr_path = ref.partition(":")
    if not attr_path:
        raise ValueError(f"Invalid callable ref (missing ':'): {ref!r}")
    obj: Any = importlib.import_module(module_path)
    for part in attr_path.split("."):
        obj = getattr(obj, part)
    if not callable(obj):
        raise TypeError(f"{ref!r} resolved to non-callable: {type(obj)}")
    return obj


@dataclass
class StepContext:
    """What a running step can see and do."""

    task_id: str
    step_index: int
    step_name: str
    attempt: int
    previous: Any = None
    heartbeat: Callable[[], None] = lambda: None
    cancelled: threading.Event = field(default_factory=threading.Event)


@dataclass
class StepResult:
    """Output of a step: checkpoint context plus produced artifact paths."""

    context: Any = None
    artifacts: list[str] = field(default_factory=list)


@runtime_checkable
class Step(Protocol):
    name: str
    timeout_seconds: float | None

    def run(self, ctx: StepContext) -> StepResult: ...


def _as_result(value: Any, declared_artifacts: Sequence[str]) -> StepResult:
    if isinstance(value, StepResult):
        result = value
    else:
        result = StepResult(context=value)
    artifacts = list(declared_artifacts)
    artifacts.extend(a for a in result.artifacts if a not in artifacts)
    return StepResult(context=result.context, artifacts=artifacts)


class CallableStep:
    """Run ``func(ctx)`` on a worker thread with a timeout.

    Example:
        >>> step = CallableStep("transform", "mypkg.jobs:transform", timeout_seconds=600)
    """

    def __init__(
        self,
        name: str,
        func: Callable[[StepContext], Any] | str,
        *,
        timeout_seconds: float | None = None,
        artifacts: Sequence[str] = (),
    ):
        self.name = name
        self._func = func
        self.timeout_seconds = timeout_seconds
        self.artifacts = list(artifacts)

    @property
    def func(self) -> Callable[[StepContext], Any]:
        if isinstance(self._func, str):
            self._func = resolve_callable_ref(self._func)
        return self._func

    def run(self, ctx: StepContext) -> StepResult:
        if self.timeout_seconds:
            value = run_with_timeout(
                self.func,
                self.timeout_seconds,
                operation=self.name,
                args=(ctx,),
                cancel_event=ctx.cancelled,
            )
        else:
            value = self.func(ctx)
        return _as_result(value, self.artifacts)

    def __repr__(self) -> str:
        return f"CallableStep({self.name!r})"


class CommandFailedError(RuntimeError):
    """A command step exited non-zero.

    Deliberately not a ``VigilError``: the message (including the stderr
    tail) is left to the classifier's keyword analysis.
    """

    def __init__(self, command: str, returncode: int, stderr: str):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no output"
        super().__init__(f"Command exited with status {returncode}: {detail}")


class CommandStep:
    """Run a subprocess; exit status 0 is success.

    The step context records the return code and a tail of stdout. The
    child is killed when ``timeout_seconds`` passes.
    """

    def __init__(
        self,
        name: str,
        command: str | Sequence[str],
        *,
        timeout_seconds: float | None = None,
        artifacts: Sequence[str] = (),
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
    ):
        self.name = name
        self.command = command
        self.timeout_seconds = timeout_seconds
        self.artifacts = list(artifacts)
        self.cwd = cwd
        self.env = env

    @property
    def argv(self) -> list[str]:
        if isinstance(self.command, str):
            return shlex.split(self.command)
        return list(self.command)

    def run(self, ctx: StepContext) -> StepResult:
        env = {**os.environ, **(self.env or {})}
        env.update(
            VIGIL_TASK_ID=ctx.task_id,
            VIGIL_STEP_INDEX=str(ctx.step_index),
            VIGIL_ATTEMPT=str(ctx.attempt),
        )
        display = self.command if isinstance(self.command, str) else shlex.join(self.command)
        try:
            completed = subprocess.run(
                self.argv,
                cwd=self.cwd,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise StepTimeoutError(
                f"Command '{display}' timed out after {self.timeout_seconds}s",
                timeout=self.timeout_seconds,
            ) from e
        except FileNotFoundError as e:
            raise FatalStepError(f"Command not found: {display}", cause=e) from e

        if completed.returncode != 0:
            raise CommandFailedError(display, completed.returncode, completed.stderr or "")

        return _as_result(
            {"returncode": 0, "stdout_tail": (completed.stdout or "")[-OUTPUT_TAIL_CHARS:]},
            self.artifacts,
        )

    def __repr__(self) -> str:
        return f"CommandStep({self.name!r})"
