"""Plan loading and the supervised execution loop."""

from vigil.orchestration.orchestrator import Orchestrator, RunOutcome, exit_code_for
from vigil.orchestration.plan import PlanSpec, StepSpec

__all__ = ["Orchestrator", "PlanSpec", "RunOutcome", "StepSpec", "exit_code_for"]
