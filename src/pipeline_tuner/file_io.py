"""Text and JSON-Lines I/O helpers with atomic writes and bounded logs."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Iterator
from contextlib import suppress
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_ATOMIC_REPLACE_MAX_RETRIES = 8
_ATOMIC_REPLACE_RETRY_SECONDS = 0.01


def _replace_file_with_retry(src: Path, dst: Path) -> None:
    last_error: OSError | None = None
    for attempt in range(_ATOMIC_REPLACE_MAX_RETRIES):
        try:
            src.replace(dst)
            return
        except PermissionError as exc:
            last_error = exc
        except OSError as exc:
            if exc.errno != 13:
                raise
            last_error = exc
        if attempt < _ATOMIC_REPLACE_MAX_RETRIES - 1:
            time.sleep(_ATOMIC_REPLACE_RETRY_SECONDS * (attempt + 1))
    if last_error is not None:
        raise last_error


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write text next to ``path`` and rename it into place.

    Readers never observe a partially written file. Concurrent writers are
    not excluded: the last rename wins.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            handle.write(content)
        _replace_file_with_retry(tmp_path, path)
    finally:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)


def write_json_atomic(path: Path, payload: Any) -> None:
    """Serialize ``payload`` as strict JSON and write it atomically.

    Serialization happens before the temp file is created, so an
    unserializable payload leaves the previous file untouched.
    """
    text = json.dumps(payload, indent=2, ensure_ascii=False, allow_nan=False)
    atomic_write_text(path, text + "\n")


def read_json_dict(path: Path) -> dict[str, Any]:
    """Return the JSON object stored at ``path`` or ``{}`` when unusable."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        logger.warning("Could not read %s: %s", path, exc)
        return {}
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("Ignoring corrupt JSON file %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring non-object JSON file %s", path)
        return {}
    return data


def append_jsonl(path: Path, payload: dict[str, Any]) -> None:
    """Append a JSON payload to a JSONL file using strict JSON encoding."""
    line = json.dumps(payload, ensure_ascii=False, allow_nan=False) + "\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(line)


def iter_jsonl(path: Path) -> Iterator[dict[str, Any]]:
    """Yield JSON objects from ``path``, skipping blank and malformed lines."""
    if not path.exists():
        return
    with path.open(encoding="utf-8", errors="replace") as handle:
        for lineno, line in enumerate(handle, 1):
            line = line.strip()
            if not line:
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError as exc:
                logger.warning("Skip invalid line %d in %s: %s", lineno, path, exc)
                continue
            if isinstance(row, dict):
                yield row


def tail_jsonl(path: Path, count: int) -> list[dict[str, Any]]:
    """Return the last ``count`` parseable rows of a JSONL file."""
    if count <= 0:
        return []
    rows = list(iter_jsonl(path))
    return rows[-count:]


def rotate_jsonl(path: Path, max_lines: int) -> int:
    """Trim ``path`` to its newest ``max_lines`` lines. Returns lines dropped."""
    if max_lines < 1 or not path.exists():
        return 0
    lines = path.read_text(encoding="utf-8", errors="replace").splitlines(keepends=True)
    if len(lines) <= max_lines:
        return 0
    dropped = len(lines) - max_lines
    atomic_write_text(path, "".join(lines[dropped:]))
    logger.debug("Rotated %s: dropped %d line(s)", path, dropped)
    return dropped
