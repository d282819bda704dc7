"""Iteration budgeting: adaptive complexity tiers, per-tier prediction, bias feedback.

Three cooperating steps run in order during a tuning pass:

1. :func:`derive_boundaries` re-splits the observed complexity range into
   equal-population thirds once enough samples exist.
2. :func:`build_iteration_model` buckets every outcome with iteration data
   and derives a mean, spread, confidence and iteration cap per tier.
3. :func:`apply_prediction_bias` nudges tier means by the recent
   prediction error recorded by the external complexity predictor.
"""

from __future__ import annotations

import logging
import math
import statistics
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from pipeline_tuner.config import IterationSettings
from pipeline_tuner.schemas import (
    ComplexityBuckets,
    IterationModel,
    OutcomeRecord,
    PredictionValidation,
    Tier,
    TierStats,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

_LOW_MAX_RANGE = (1, 5)
_MED_MAX_CEILING = 8


def complexity_pairs(records: Iterable[OutcomeRecord]) -> list[tuple[int, int]]:
    """(complexity, iterations) for every outcome that reports iterations."""
    return [(r.complexity, r.iterations) for r in records if r.iterations > 0]


def derive_boundaries(
    pairs: Sequence[tuple[int, int]],
    current: ComplexityBuckets,
    *,
    min_samples: int = 50,
) -> ComplexityBuckets | None:
    """Return new boundaries from equal-sized thirds, or ``None`` below ``min_samples``."""
    if len(pairs) < max(min_samples, 3):
        return None
    ordered = sorted(c for c, _ in pairs)
    third = len(ordered) // 3
    low_max = min(_LOW_MAX_RANGE[1], max(_LOW_MAX_RANGE[0], int(ordered[third - 1])))
    med_max = min(_MED_MAX_CEILING, max(low_max + 1, int(ordered[2 * third - 1])))
    if (low_max, med_max) != (current.low_max, current.med_max):
        logger.info(
            "Complexity boundaries %d/%d -> %d/%d (%d samples)",
            current.low_max,
            current.med_max,
            low_max,
            med_max,
            len(pairs),
        )
    return ComplexityBuckets(
        low_max=low_max,
        med_max=med_max,
        samples=len(pairs),
        updated=utc_now_iso(),
    )


def confidence_for(samples: int) -> float:
    if samples >= 10:
        return 0.8
    if samples >= 5:
        return 0.6
    return 0.4


def tier_stats(
    values: Sequence[int],
    *,
    floor: int,
    fallback: int,
) -> TierStats:
    """Mean, population stddev, confidence and iteration cap for one tier."""
    if not values:
        return TierStats(max_iterations=fallback, confidence=confidence_for(0))
    mean = round(statistics.fmean(values), 1)
    stddev = round(statistics.pstdev(values), 1) if len(values) > 1 else 0.0
    return TierStats(
        max_iterations=max(floor, math.floor(mean + stddev)),
        confidence=confidence_for(len(values)),
        mean=mean,
        stddev=stddev,
        samples=len(values),
    )


def build_iteration_model(
    records: Iterable[OutcomeRecord],
    buckets: ComplexityBuckets,
    settings: IterationSettings | None = None,
) -> IterationModel:
    """Predict iteration needs per complexity tier from the outcome log."""
    settings = settings or IterationSettings()
    grouped: dict[Tier, list[int]] = {tier: [] for tier in Tier}
    for complexity, iterations in complexity_pairs(records):
        grouped[buckets.bucket_for(complexity)].append(iterations)

    tiers = {
        tier.value: tier_stats(
            grouped[tier],
            floor=settings.tier_floors.get(tier.value, 0),
            fallback=settings.tier_fallbacks.get(tier.value, 0),
        )
        for tier in Tier
    }
    return IterationModel(**tiers, updated_at=utc_now_iso())


@dataclass
class BiasAdjustment:
    tier: Tier
    mean_delta: float
    correction: float
    samples: int


@dataclass
class BiasResult:
    model: IterationModel
    adjustments: list[BiasAdjustment] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.adjustments)


def apply_prediction_bias(
    model: IterationModel,
    validations: Sequence[PredictionValidation],
    buckets: ComplexityBuckets,
    settings: IterationSettings | None = None,
) -> BiasResult:
    """Shift tier means against the mean prediction error (``predicted - actual``).

    Applied additively to whatever mean the model currently holds, so the
    same validation rows processed twice shift the mean twice.
    """
    settings = settings or IterationSettings()
    recent = list(validations)[-settings.bias_window :] if settings.bias_window > 0 else []
    grouped: dict[Tier, list[float]] = {}
    for row in recent:
        grouped.setdefault(buckets.bucket_for(row.predicted_complexity), []).append(row.delta)

    updated = model.model_copy(deep=True)
    adjustments: list[BiasAdjustment] = []
    for tier in Tier:
        deltas = grouped.get(tier, [])
        if len(deltas) < settings.bias_min_samples:
            continue
        mean_delta = statistics.fmean(deltas)
        if abs(mean_delta) <= settings.bias_threshold:
            continue
        correction = round(-mean_delta * settings.bias_factor, 2)
        stats = updated.tier(tier)
        stats.mean = round(stats.mean + correction, 2)
        stats.bias_correction = correction
        adjustments.append(
            BiasAdjustment(tier=tier, mean_delta=mean_delta, correction=correction, samples=len(deltas))
        )
        logger.info(
            "Prediction bias correction for %s: delta=%.2f, correction=%.2f (%d samples)",
            tier.value,
            mean_delta,
            correction,
            len(deltas),
        )
    return BiasResult(model=updated, adjustments=adjustments)
