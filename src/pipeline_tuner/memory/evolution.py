"""Prune, strengthen and promote recorded failure patterns.

One pass over every repository store under ``memory_root``:

- entries last seen more than ``prune_days`` ago are dropped
  (entries without ``last_seen`` are kept);
- recurring (``seen_count >= strength_threshold``) and recent
  (``last_seen`` within ``boost_days``) entries have their weight
  multiplied by ``boost_factor``, compounding across passes;
- patterns occurring ``promotion_threshold`` or more times across all
  stores are added once to the global store.

Promotion counts raw occurrences, so one repository holding the same
pattern three times is enough.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pipeline_tuner.config import MemorySettings, TunerSettings
from pipeline_tuner.events import EventLog
from pipeline_tuner.file_io import read_json_dict
from pipeline_tuner.memory.store import iter_repo_stores
from pipeline_tuner.schemas import (
    FailureStore,
    GlobalMemory,
    GlobalPromotedPattern,
    MemoryFailureEntry,
    coerce_int,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

# optimization/<file> -> MemorySettings fields it may override
_LEGACY_OVERRIDES: dict[str, tuple[str, ...]] = {
    "memory-timescales.json": ("prune_days", "boost_days"),
    "memory-thresholds.json": ("strength_threshold", "promotion_threshold"),
}


@dataclass
class EvolutionResult:
    pruned: int = 0
    strengthened: int = 0
    promoted: int = 0
    promoted_patterns: list[str] = field(default_factory=list)


def effective_memory_settings(settings: TunerSettings) -> MemorySettings:
    """Apply the per-concern JSON override files over ``settings.memory``."""
    updates: dict[str, int] = {}
    for filename, keys in _LEGACY_OVERRIDES.items():
        path = settings.optimization_dir / filename
        if not path.is_file():
            continue
        data = read_json_dict(path)
        for key in keys:
            if data.get(key) is not None and coerce_int(data[key]) > 0:
                updates[key] = coerce_int(data[key])
    if updates:
        logger.debug("Memory overrides from optimization dir: %s", updates)
    return settings.memory.model_copy(update=updates)


def _is_stale(entry: MemoryFailureEntry, prune_cutoff: datetime) -> bool:
    seen = entry.last_seen_at
    return seen is not None and seen < prune_cutoff


def _strengthen(entry: MemoryFailureEntry, boost_cutoff: datetime, cfg: MemorySettings) -> None:
    seen = entry.last_seen_at
    if entry.seen_count >= cfg.strength_threshold and seen is not None and seen >= boost_cutoff:
        entry.weight = entry.weight * cfg.boost_factor


def evolve_store(
    path: Path,
    cfg: MemorySettings,
    now: datetime,
) -> tuple[int, int]:
    """Prune and strengthen one store in place. Returns ``(pruned, strong)``."""
    store = FailureStore.load(path)
    if not store.failures:
        return 0, 0
    prune_cutoff = now - timedelta(days=cfg.prune_days)
    boost_cutoff = now - timedelta(days=cfg.boost_days)

    survivors = [entry for entry in store.failures if not _is_stale(entry, prune_cutoff)]
    pruned = len(store.failures) - len(survivors)
    for entry in survivors:
        _strengthen(entry, boost_cutoff, cfg)
    strong = sum(1 for entry in survivors if entry.weight > 1.0)

    store.failures = survivors
    store.save(path)
    return pruned, strong


def promote_patterns(
    memory_root: Path,
    global_path: Path,
    threshold: int,
) -> list[str]:
    """Copy frequently recurring patterns into the global store."""
    counts: Counter[str] = Counter()
    for path in iter_repo_stores(memory_root):
        counts.update(entry.pattern for entry in FailureStore.load(path).failures if entry.pattern)

    global_memory = GlobalMemory.load(global_path)
    promoted: list[str] = []
    for pattern, count in counts.most_common():
        if count < threshold or global_memory.has_pattern(pattern):
            continue
        global_memory.common_patterns.append(
            GlobalPromotedPattern(pattern=pattern, promoted_at=utc_now_iso())
        )
        promoted.append(pattern)

    if promoted or not global_path.exists():
        global_memory.save(global_path)
    return promoted


def evolve_memory(
    settings: TunerSettings,
    events: EventLog | None = None,
    *,
    now: datetime | None = None,
) -> EvolutionResult:
    """Run one evolution pass over every repository failure store."""
    cfg = effective_memory_settings(settings)
    moment = now or datetime.now(timezone.utc)
    result = EvolutionResult()

    for path in iter_repo_stores(settings.memory_root):
        pruned, strong = evolve_store(path, cfg, moment)
        result.pruned += pruned
        result.strengthened += strong

    if settings.memory_root.is_dir():
        result.promoted_patterns = promote_patterns(
            settings.memory_root,
            settings.global_memory_path,
            cfg.promotion_threshold,
        )
        result.promoted = len(result.promoted_patterns)

    events = events or EventLog(settings.events_path)
    events.emit(
        "optimize.memory_pruned",
        pruned=result.pruned,
        strengthened=result.strengthened,
        promoted=result.promoted,
    )
    logger.info(
        "Memory evolved: pruned=%d, strengthened=%d, promoted=%d",
        result.pruned,
        result.strengthened,
        result.promoted,
    )
    return result
