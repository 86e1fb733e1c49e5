"""
Deterministic hashing for checkpoint integrity and alert deduplication.

A checkpoint's ``integrity_hash`` is the SHA-256 of its serialised
``context_blob``. The blob is produced by :func:`canonical_json` so that the
same context always serialises to the same bytes, whatever the dict
insertion order was when the job built it.

Examples:
    >>> blob = canonical_json({"b": 1, "a": [1, 2]})
    >>> blob
    '{"a":[1,2],"b":1}'
    >>> sha256_hex(blob) == sha256_hex('{"a":[1,2],"b":1}')
    True
    >>> len(compute_hash("task-1", 3, "retry_exhausted"))
    16

Tags:
    hashing, integrity, checkpoint, vigil
"""

import hashlib
import json
from typing import Any


def canonical_json(value: Any) -> str:
    """Serialise *value* to compact JSON with sorted keys.

    Raises:
        TypeError: If *value* contains objects JSON cannot represent.
    """
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_hex(data: str | bytes) -> str:
    """Full hex SHA-256 digest of a string (UTF-8) or bytes."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def compute_hash(*values: Any, length: int = 16) -> str:
    """
    Compute a short deterministic hash from values.

    Values are joined with ``|`` and hashed with SHA-256; used for alert
    fingerprints where collisions only cost a missed dedup.

    Args:
        *values: Values to hash (converted to str)
        length: Number of hex characters to return

    Returns:
        Truncated hex digest
    """
    content = "|".join(str(v) for v in values)
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:length]
