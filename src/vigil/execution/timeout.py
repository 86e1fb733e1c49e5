"""Timeout enforcement for step execution.

Each plan step has a caller-supplied timeout. :func:`run_with_timeout` runs a
callable on a worker thread and raises :class:`StepTimeoutError` (a
transient error) when the deadline passes, so a hung step is retried like
any other transient failure.

Guardrails:
    - Python threads cannot be killed; a timed-out callable keeps running in
      the background. Steps that can stop early should watch
      ``StepContext.cancelled``, which is set when their deadline passes.
    - Subprocess steps use ``subprocess.run(timeout=...)`` instead, which
      does kill the child.
"""

from __future__ import annotations

import concurrent.futures
import threading
import time
from collections.abc import Callable
from typing import Any, TypeVar

from vigil.core.errors import StepTimeoutError

T = TypeVar("T")


def run_with_timeout(
    func: Callable[..., T],
    timeout_seconds: float,
    operation: str | None = None,
    args: tuple[Any, ...] | None = None,
    kwargs: dict[str, Any] | None = None,
    *,
    cancel_event: threading.Event | None = None,
) -> T:
    """Run a callable with a timeout using a single worker thread.

    Args:
        func: Callable to execute
        timeout_seconds: Maximum execution time
        operation: Name for error messages
        args: Positional arguments for func
        kwargs: Keyword arguments for func
        cancel_event: Set when the deadline passes, for cooperative cancellation

    Returns:
        Result of func(*args, **kwargs)

    Raises:
        StepTimeoutError: If execution exceeds the timeout
        Exception: Any exception raised by func
    """
    if timeout_seconds <= 0:
        raise ValueError(f"Timeout must be positive, got {timeout_seconds}")

    start = time.monotonic()
    executor = concurrent.futures.ThreadPoolExecutor(
        max_workers=1, thread_name_prefix=f"vigil-step-{operation or 'anon'}"
    )
    future = executor.submit(func, *(args or ()), **(kwargs or {}))
    try:
        return future.result(timeout=timeout_seconds)
    except concurrent.futures.TimeoutError:
        elapsed = time.monotonic() - start
        if cancel_event is not None:
            cancel_event.set()
        raise StepTimeoutError(
            f"Operation '{operation or func.__name__}' timed out after {elapsed:.1f}s "
            f"(limit: {timeout_seconds}s)",
            timeout=timeout_seconds,
            elapsed=elapsed,
        ) from None
    finally:
        # Do not wait for a timed-out worker; it cannot be interrupted.
        executor.shutdown(wait=False, cancel_futures=True)
