"""
UTC timestamps and sortable ids.

Task, checkpoint and alert ids are ULIDs, so a plain listing of
``checkpoints/`` is already in creation order. Persisted timestamps are
timezone-aware UTC datetimes written as ISO 8601.
"""

import secrets
import time
from datetime import UTC, datetime

# Crockford base32
_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def utc_now() -> datetime:
    return datetime.now(UTC)


def generate_ulid() -> str:
    """26-char ULID: 48-bit millisecond time then 80 random bits."""
    value = (int(time.time() * 1000) << 80) | secrets.randbits(80)
    chars = []
    for _ in range(26):
        value, index = divmod(value, 32)
        chars.append(_ALPHABET[index])
    return "".join(reversed(chars))


def to_iso8601(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt is not None else None


def from_iso8601(s: str | None) -> datetime | None:
    """Parse an ISO 8601 string; naive values are taken as UTC."""
    if s is None:
        return None
    parsed = datetime.fromisoformat(s)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def seconds_since(dt: datetime | None, now: datetime | None = None) -> float | None:
    """Age of *dt* in seconds relative to *now*, clamped at zero."""
    if dt is None:
        return None
    return max(0.0, ((now or utc_now()) - dt).total_seconds())
