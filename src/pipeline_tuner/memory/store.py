"""Failure stores: ``<memory_root>/<repo>/failures.json``."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from datetime import datetime
from pathlib import Path

from pipeline_tuner.events import EventLog
from pipeline_tuner.schemas import FailureStore, MemoryFailureEntry, utc_now_iso

logger = logging.getLogger(__name__)

FAILURES_FILE = "failures.json"
MAX_PATTERN_CHARS = 200

_DIAGNOSTIC_RE = re.compile(r"error|fail|cannot|not found|undefined|exception|missing", re.IGNORECASE)
_REPO_KEY_RE = re.compile(r"[^A-Za-z0-9_.-]+")


def extract_pattern(error_output: str) -> str:
    """First diagnostic-looking line of ``error_output`` (else its first line)."""
    lines = str(error_output or "").splitlines()
    if not lines:
        return ""
    for line in lines:
        if _DIAGNOSTIC_RE.search(line):
            return line.lstrip()[:MAX_PATTERN_CHARS]
    return lines[0].lstrip()[:MAX_PATTERN_CHARS]


def repo_store_path(memory_root: Path, repo_key: str) -> Path:
    safe = _REPO_KEY_RE.sub("-", str(repo_key or "").strip()).strip("-.") or "default"
    return Path(memory_root) / safe / FAILURES_FILE


def iter_repo_stores(memory_root: Path) -> Iterator[Path]:
    """Yield every ``failures.json`` directly under a repository directory."""
    root = Path(memory_root)
    if not root.is_dir():
        return
    for repo_dir in sorted(p for p in root.iterdir() if p.is_dir()):
        candidate = repo_dir / FAILURES_FILE
        if candidate.is_file():
            yield candidate


def capture_failure(
    memory_root: Path,
    repo_key: str,
    stage: str,
    error_output: str,
    *,
    events: EventLog | None = None,
    max_entries: int = 100,
    now: datetime | None = None,
) -> MemoryFailureEntry | None:
    """Record one failure in the repository's store.

    A known pattern has its ``seen_count`` bumped; an unknown one is
    appended. Returns ``None`` when no pattern could be extracted.
    """
    pattern = extract_pattern(error_output)
    if not pattern:
        logger.debug("No failure pattern in error output for %s/%s", repo_key, stage)
        return None

    path = repo_store_path(memory_root, repo_key)
    store = FailureStore.load(path)
    seen_at = utc_now_iso(now)

    entry = next((item for item in store.failures if item.pattern == pattern), None)
    if entry is None:
        entry = MemoryFailureEntry(pattern=pattern, stage=stage, seen_count=1, last_seen=seen_at)
        store.failures.append(entry)
    else:
        entry.seen_count += 1
        entry.last_seen = seen_at

    if max_entries > 0 and len(store.failures) > max_entries:
        store.failures = store.failures[-max_entries:]
    store.save(path)

    if events is not None:
        events.emit(
            "memory.failure",
            repo=repo_key,
            stage=stage,
            pattern=pattern[:80],
            seen_count=entry.seen_count,
        )
    logger.info("Captured %s failure for %s (seen %d)", stage, repo_key, entry.seen_count)
    return entry
