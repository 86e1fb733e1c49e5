"""Step execution: step kinds, timeouts and the retry engine."""

from vigil.execution.retry import RetryDecision, RetryEngine, RetryPolicy, default_classifier
from vigil.execution.steps import CallableStep, CommandStep, Step, StepContext, StepResult

__all__ = [
    "CallableStep",
    "CommandStep",
    "RetryDecision",
    "RetryEngine",
    "RetryPolicy",
    "Step",
    "StepContext",
    "StepResult",
    "default_classifier",
]
