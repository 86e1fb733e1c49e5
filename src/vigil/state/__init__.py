"""Durable state: the status record, append-only logs and the alert log."""

from vigil.state.alerts import AlertLog
from vigil.state.store import StateStore

__all__ = ["AlertLog", "StateStore"]
