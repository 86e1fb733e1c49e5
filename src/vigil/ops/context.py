"""
Request-scoped context for operations.

Every operation function receives an :class:`OperationContext` as its first
argument. The context carries the state store the operation works on, the
loaded settings, the caller identity and a dry-run flag.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

from vigil.checkpoint.manager import CheckpointManager
from vigil.core.settings import VigilSettings
from vigil.state.store import StateStore


@dataclass
class OperationContext:
    """Context passed to every operation function.

    Attributes:
        store: State store of the supervised run.
        settings: Effective settings (file + environment + CLI options).
        request_id: Unique ID for this invocation (auto-generated).
        caller: Origin of the request, ``"cli"`` or ``"sdk"``.
        dry_run: When ``True``, mutating operations return a preview only.
        metadata: Arbitrary key/value pairs forwarded to logging.
    """

    store: StateStore
    settings: VigilSettings
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    caller: str = "sdk"
    dry_run: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: VigilSettings, **kwargs: Any) -> OperationContext:
        store = StateStore(
            settings.state_dir,
            alert_cooldown_seconds=settings.health.alert_cooldown_seconds,
            backup_keep=settings.checkpoint.backup_keep,
        )
        return cls(store=store, settings=settings, **kwargs)

    def checkpoints(self) -> CheckpointManager:
        return CheckpointManager(self.store)
