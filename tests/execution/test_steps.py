"""Tests for vigil.execution.steps and vigil.execution.timeout."""

import sys
import threading
import time

import pytest

from vigil.core.errors import FatalStepError, StepTimeoutError
from vigil.execution.steps import (
    CallableStep,
    CommandFailedError,
    CommandStep,
    Step,
    StepContext,
    StepResult,
    resolve_callable_ref,
)
from vigil.execution.timeout import run_with_timeout


def _ctx(**kw) -> StepContext:
    return StepContext(task_id="T1", step_index=kw.pop("step_index", 2), step_name="s", attempt=0, **kw)


# =============================================================================
# Timeout
# =============================================================================


class TestRunWithTimeout:
    def test_returns_value(self):
        assert run_with_timeout(lambda a, b: a + b, 5, args=(1, 2)) == 3

    def test_propagates_exceptions(self):
        def boom():
            raise KeyError("k")

        with pytest.raises(KeyError):
            run_with_timeout(boom, 5)

    def test_times_out_and_signals_cancel(self):
        cancel = threading.Event()
        release = threading.Event()

        def hang():
            release.wait(5)

        with pytest.raises(StepTimeoutError) as exc_info:
            run_with_timeout(hang, 0.05, operation="hang", cancel_event=cancel)
        release.set()
        assert cancel.is_set()
        assert exc_info.value.timeout == 0.05
        assert exc_info.value.retryable is True
        assert "hang" in exc_info.value.message

    @pytest.mark.parametrize("timeout", [0, -1])
    def test_rejects_non_positive_timeout(self, timeout):
        with pytest.raises(ValueError):
            run_with_timeout(lambda: None, timeout)


# =============================================================================
# Callable steps
# =============================================================================


class TestResolveCallableRef:
    def test_resolves_nested(self):
        assert resolve_callable_ref("step_fixtures:ScriptedStep.run").__name__ == "run"

    def test_requires_colon(self):
        with pytest.raises(ValueError):
            resolve_callable_ref("step_fixtures.produce")

    def test_missing_module(self):
        with pytest.raises(ImportError):
            resolve_callable_ref("no_such_module_here:fn")

    def test_non_callable(self):
        with pytest.raises(TypeError):
            resolve_callable_ref("step_fixtures:__doc__")


class TestCallableStep:
    def test_plain_value_becomes_context(self):
        step = CallableStep("s", lambda ctx: {"step": ctx.step_index})
        assert step.run(_ctx()) == StepResult(context={"step": 2}, artifacts=[])

    def test_step_result_artifacts_merged_with_declared(self):
        step = CallableStep(
            "s",
            lambda ctx: StepResult(context=1, artifacts=["b", "a"]),
            artifacts=["a"],
        )
        assert step.run(_ctx()).artifacts == ["a", "b"]

    def test_ref_resolved_lazily(self):
        step = CallableStep("s", "step_fixtures:produce")
        result = step.run(_ctx(previous={"x": 1}))
        assert result.context == {"step": 2, "previous": {"x": 1}}

    def test_timeout_enforced(self):
        step = CallableStep("slow", lambda ctx: time.sleep(1), timeout_seconds=0.05)
        with pytest.raises(StepTimeoutError):
            step.run(_ctx())

    def test_satisfies_protocol(self):
        assert isinstance(CallableStep("s", lambda ctx: None), Step)


# =============================================================================
# Command steps
# =============================================================================


class TestCommandStep:
    def test_success_records_stdout_tail(self):
        step = CommandStep("echo", [sys.executable, "-c", "print('hello')"])
        result = step.run(_ctx())
        assert result.context["returncode"] == 0
        assert result.context["stdout_tail"].strip() == "hello"

    def test_exports_task_environment(self):
        code = "import os; print(os.environ['VIGIL_TASK_ID'], os.environ['VIGIL_STEP_INDEX'], os.environ['EXTRA'])"
        step = CommandStep("env", [sys.executable, "-c", code], env={"EXTRA": "yes"})
        assert step.run(_ctx(step_index=4)).context["stdout_tail"].split() == ["T1", "4", "yes"]

    def test_non_zero_exit(self):
        code = "import sys; sys.stderr.write('first\\nconnection refused\\n'); sys.exit(3)"
        step = CommandStep("fail", [sys.executable, "-c", code])
        with pytest.raises(CommandFailedError) as exc_info:
            step.run(_ctx())
        assert exc_info.value.returncode == 3
        assert str(exc_info.value) == "Command exited with status 3: connection refused"

    @pytest.mark.slow
    def test_timeout_kills_child(self):
        step = CommandStep("sleep", [sys.executable, "-c", "import time; time.sleep(10)"], timeout_seconds=0.2)
        with pytest.raises(StepTimeoutError):
            step.run(_ctx())

    def test_missing_binary_is_fatal(self):
        step = CommandStep("nope", "definitely-not-a-real-binary-vigil --x")
        with pytest.raises(FatalStepError, match="Command not found"):
            step.run(_ctx())

    def test_string_command_split(self):
        assert CommandStep("s", "python export.py --all").argv == ["python", "export.py", "--all"]

    def test_declared_artifacts_on_result(self):
        step = CommandStep("echo", [sys.executable, "-c", "pass"], artifacts=["out.csv"])
        assert step.run(_ctx()).artifacts == ["out.csv"]
