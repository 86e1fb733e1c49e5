"""
Shared pytest fixtures for vigil tests.

This module provides:
- Logging reset between tests (structlog binds to the stream it was configured with)
- A state store and checkpoint manager rooted in ``tmp_path``
- A recording fake for ``sleep`` so backoff never waits for real
- Fixed host metrics so health checks do not depend on the machine running the tests
- A task factory for putting the store into a given status
- An operation context and a plan-file writer for ops and CLI tests
- A CLI invoker with a settings file tuned for fast retries

Usage:
    Fixtures are auto-discovered by pytest. Simply use them as function
    arguments (pytest injects them automatically).

    def test_something(store, make_task):
        task = make_task(TaskStatus.PAUSED, step=2)
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Generator
from pathlib import Path

import pytest
import structlog
import yaml
from typer.testing import CliRunner, Result

from vigil.checkpoint.manager import CheckpointManager
from vigil.cli.app import app
from vigil.core.logging import clear_context
from vigil.core.models import PauseReason, Task, TaskStatus
from vigil.core.settings import VigilSettings
from vigil.execution.retry import RetryPolicy
from vigil.health.monitor import HostSampler
from vigil.ops.context import OperationContext
from vigil.state.store import StateStore

from fakes import IDLE_HOST, FixedSampler, RecordingSleep


# =============================================================================
# Test Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def reset_logging() -> Generator[None, None, None]:
    """Drop any structlog configuration and bound context a test left behind."""
    yield
    clear_context()
    structlog.reset_defaults()
    root = logging.getLogger()
    for handler in [h for h in root.handlers if type(h) is logging.StreamHandler]:
        root.removeHandler(handler)


# =============================================================================
# State
# =============================================================================


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def store(state_dir: Path) -> StateStore:
    """Empty state store with its directory layout created."""
    s = StateStore(state_dir)
    s.ensure()
    return s


@pytest.fixture
def artifact_root(tmp_path: Path) -> Path:
    root = tmp_path / "work"
    root.mkdir()
    return root


@pytest.fixture
def checkpoints(store: StateStore, artifact_root: Path) -> CheckpointManager:
    return CheckpointManager(store, artifact_root=artifact_root)


@pytest.fixture
def make_task(store: StateStore) -> Callable[..., Task]:
    """Factory writing a task with the given status straight into the store."""

    def _make(
        status: TaskStatus = TaskStatus.RUNNING,
        *,
        step: int = 0,
        total: int = 3,
        pause_reason: PauseReason | None = None,
        plan_reference: str = "plan.yaml",
    ) -> Task:
        task = Task.create(plan_reference, total_steps=total)
        task.status = status
        task.current_step_index = step
        task.pause_reason = pause_reason
        store.write(task)
        return task

    return _make


# =============================================================================
# Time and Host
# =============================================================================


@pytest.fixture
def sleeps() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def sampler() -> FixedSampler:
    return FixedSampler()


@pytest.fixture
def quiet_host(monkeypatch: pytest.MonkeyPatch) -> None:
    """Make every HostSampler report an idle machine."""
    monkeypatch.setattr(HostSampler, "sample", lambda self: IDLE_HOST)


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture
def settings(state_dir: Path, monkeypatch: pytest.MonkeyPatch) -> VigilSettings:
    """Settings for fast runs: no backoff delays, no jitter, state under tmp_path."""
    for name in ("VIGIL_STATE_DIR", "VIGIL_LOG_LEVEL", "VIGIL_RETRY__MAX_ATTEMPTS"):
        monkeypatch.delenv(name, raising=False)
    return VigilSettings(
        state_dir=state_dir,
        log_level="ERROR",
        heartbeat_interval_seconds=60,
        retry=RetryPolicy(max_attempts=2, initial_delay=0, jitter=False),
    )


@pytest.fixture
def ctx(settings: VigilSettings) -> OperationContext:
    """Operation context on the test settings."""
    return OperationContext.from_settings(settings)


@pytest.fixture
def write_plan(tmp_path: Path) -> Callable[..., Path]:
    """Write a plan YAML whose steps call functions in ``step_fixtures``."""

    def _write(*callables: str, name: str = "test-plan") -> Path:
        steps = [{"name": f"{fn}-{i}", "callable": f"step_fixtures:{fn}"} for i, fn in enumerate(callables)]
        path = tmp_path / "plan.yaml"
        path.write_text(yaml.safe_dump({"name": name, "steps": steps}))
        return path

    return _write


# =============================================================================
# CLI
# =============================================================================


@pytest.fixture
def cli_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Settings file for CLI runs; the environment is cleared of ``VIGIL_*``."""
    for name in [n for n in os.environ if n.startswith("VIGIL_")]:
        monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "vigil.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "heartbeat_interval_seconds": 60,
                "retry": {"max_attempts": 2, "initial_delay": 0, "jitter": False},
            }
        )
    )
    return path


@pytest.fixture
def invoke(state_dir: Path, cli_config: Path) -> Callable[..., Result]:
    """Invoke the CLI against the test state directory."""
    runner = CliRunner()

    def _invoke(*args: str, input: str | None = None) -> Result:
        base = ["--state-dir", str(state_dir), "--config", str(cli_config), "--log-level", "ERROR"]
        return runner.invoke(app, [*base, *args], input=input)

    return _invoke
