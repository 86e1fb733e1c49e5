"""Operator-facing recovery of paused tasks."""

from vigil.recovery.controller import RecoveryController, RecoveryResult, VerificationReport

__all__ = ["RecoveryController", "RecoveryResult", "VerificationReport"]
