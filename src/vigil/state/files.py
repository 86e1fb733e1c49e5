"""Low-level durable file primitives shared by the state store and checkpoints.

``atomic_write_json`` is the only way vigil rewrites a file: the new content
goes to a temp file in the same directory, is fsync'd, then renamed over the
target, and the directory entry is fsync'd. A reader therefore sees either
the old record or the new one, never a torn write.

JSONL logs are append-only; each line is flushed and fsync'd before the call
returns, so a record is durable before the action it describes begins.
"""

from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

from vigil.core.errors import StateStoreError
from vigil.core.logging import get_logger

logger = get_logger(__name__)

_TAIL_SCAN_BYTES = 4096


def fsync_directory(directory: Path) -> None:
    """Flush a directory entry so a preceding rename survives power loss."""
    if not hasattr(os, "O_DIRECTORY"):
        return
    fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_write_text(path: Path, content: str) -> None:
    """Replace *path* with *content* atomically (temp file + fsync + rename).

    Raises:
        StateStoreError: On any I/O failure; the previous file is left intact.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
        fsync_directory(path.parent)
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise StateStoreError(f"Atomic write failed: {e}", cause=e).with_context(
            path=str(path)
        ) from e


def atomic_write_json(path: Path, data: Any) -> None:
    atomic_write_text(path, json.dumps(data, indent=2, sort_keys=True) + "\n")


def _repair_torn_tail(path: Path) -> None:
    """Make sure the log ends on a line boundary before appending.

    A writer that died mid-append leaves a partial last line. If it still
    parses it only lost its newline, which is restored; otherwise the
    fragment never became durable and is cut off.
    """
    with path.open("r+b") as fh:
        size = fh.seek(0, os.SEEK_END)
        if size == 0:
            return
        fh.seek(size - 1)
        if fh.read(1) == b"\n":
            return

        keep = 0
        pos = size
        while pos > 0:
            start = max(0, pos - _TAIL_SCAN_BYTES)
            fh.seek(start)
            newline = fh.read(pos - start).rfind(b"\n")
            if newline != -1:
                keep = start + newline + 1
                break
            pos = start

        fh.seek(keep)
        tail = fh.read()
        try:
            json.loads(tail)
        except ValueError:
            fh.truncate(keep)
            logger.warning("torn_log_tail_truncated", path=str(path), bytes=size - keep)
        else:
            fh.seek(0, os.SEEK_END)
            fh.write(b"\n")
        fh.flush()
        os.fsync(fh.fileno())


def _encode_line(record: dict[str, Any]) -> str:
    return json.dumps(record, sort_keys=True, separators=(",", ":")) + "\n"


def append_jsonl(path: Path, record: dict[str, Any]) -> None:
    """Append one JSON line durably.

    Raises:
        StateStoreError: If the line cannot be written and synced.
    """
    line = _encode_line(record)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            _repair_torn_tail(path)
        with path.open("a", encoding="utf-8") as fh:
            fh.write(line)
            fh.flush()
            os.fsync(fh.fileno())
    except OSError as e:
        raise StateStoreError(f"Append failed: {e}", cause=e).with_context(path=str(path)) from e


def read_jsonl(path: Path) -> list[dict[str, Any]]:
    """Read every complete line of a JSONL log.

    A torn final line (the writer died mid-append) is skipped with a
    warning. A damaged line anywhere else, including bytes that are not
    UTF-8, means the log was edited or the disk is failing, and raises.

    Raises:
        StateStoreError: If the file cannot be read or a non-final line is damaged.
    """
    if not path.exists():
        return []
    try:
        lines = path.read_bytes().splitlines()
    except OSError as e:
        raise StateStoreError(f"Cannot read log: {e}", cause=e).with_context(path=str(path)) from e

    records: list[dict[str, Any]] = []
    for number, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            records.append(json.loads(line.decode("utf-8")))
        except ValueError as e:
            if number == len(lines):
                logger.warning("torn_log_line_skipped", path=str(path), line=number)
                continue
            raise StateStoreError(f"Damaged log line {number}: {e}", cause=e).with_context(
                path=str(path)
            ) from e
    return records


def rewrite_jsonl(path: Path, records: list[dict[str, Any]]) -> None:
    """Atomically replace a JSONL log with *records*.

    Only retention rewrites a log, and only while no supervisor process is
    appending to it.
    """
    atomic_write_text(path, "".join(_encode_line(r) for r in records))


def trim_records(
    records: list[dict[str, Any]],
    max_records: int,
    *,
    protected: Callable[[dict[str, Any]], bool],
) -> list[dict[str, Any]]:
    """Drop the oldest unprotected records until at most *max_records* remain.

    Protected records always stay, so the result can still exceed the limit.
    """
    excess = len(records) - max_records
    kept: list[dict[str, Any]] = []
    for record in records:
        if excess > 0 and not protected(record):
            excess -= 1
            continue
        kept.append(record)
    return kept
