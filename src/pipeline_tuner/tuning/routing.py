"""Per-stage execution-tier routing: use the cheap tier where it is proven safe."""

from __future__ import annotations

import logging
import random
from collections.abc import Iterable
from dataclasses import dataclass, field

from pipeline_tuner.config import RoutingSettings
from pipeline_tuner.schemas import ModelRoutingTable, OutcomeRecord, RouteDecision, utc_now_iso

logger = logging.getLogger(__name__)


@dataclass
class TierCounts:
    total: int = 0
    completed: int = 0

    @property
    def rate(self) -> float:
        return round(self.completed / self.total * 100, 1) if self.total else 0.0


@dataclass
class RoutingResult:
    table: ModelRoutingTable
    switched_to_cheap: list[str] = field(default_factory=list)


def confidence_for(samples: int) -> float:
    if samples >= 10:
        return 0.9
    if samples >= 5:
        return 0.7
    return 0.5


def collect_stage_counts(records: Iterable[OutcomeRecord]) -> dict[str, dict[str, TierCounts]]:
    """stage -> execution tier -> completed/total stage counts."""
    counts: dict[str, dict[str, TierCounts]] = {}
    for record in records:
        for stage in record.stages:
            entry = counts.setdefault(stage.name, {}).setdefault(record.model, TierCounts())
            entry.total += 1
            if stage.succeeded:
                entry.completed += 1
    return counts


def route_models(
    records: Iterable[OutcomeRecord],
    settings: RoutingSettings | None = None,
) -> RoutingResult:
    """Recommend the cheap tier for stages where it completes reliably."""
    settings = settings or RoutingSettings()
    cheap, expensive = settings.cheap_model, settings.expensive_model
    routes: dict[str, RouteDecision] = {}
    switched: list[str] = []

    for stage, per_tier in sorted(collect_stage_counts(records).items()):
        cheap_counts = per_tier.get(cheap, TierCounts())
        expensive_counts = per_tier.get(expensive, TierCounts())
        recommended = expensive
        if cheap_counts.total >= settings.min_samples and cheap_counts.rate >= settings.success_threshold:
            recommended = cheap
            switched.append(stage)
        routes[stage] = RouteDecision(
            recommended_model=recommended,
            confidence=confidence_for(cheap_counts.total + expensive_counts.total),
            success_rate_per_model={cheap: cheap_counts.rate, expensive: expensive_counts.rate},
            sample_count_per_model={cheap: cheap_counts.total, expensive: expensive_counts.total},
        )

    table = ModelRoutingTable(routes=routes, updated_at=utc_now_iso())
    return RoutingResult(table=table, switched_to_cheap=switched)


def should_ab_test(rng: random.Random | None = None, threshold: int = 20) -> bool:
    """Roll 0-99 and return ``True`` below ``threshold`` (about 20% of calls by default)."""
    roll = (rng or random).randrange(100)
    return roll < threshold
