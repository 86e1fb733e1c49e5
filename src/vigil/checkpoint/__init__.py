"""Checkpoint creation, verification and listing."""

from vigil.checkpoint.manager import CheckpointManager, CheckpointStatus

__all__ = ["CheckpointManager", "CheckpointStatus"]
