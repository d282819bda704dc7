"""Template weight tuning from per-(template, label) success rates.

For every pair with enough samples the persisted weight is scaled by how the
pair's success rate compares with the flat average over every labelled
outcome row::

    new_weight = clamp(old_weight * (rate / avg_rate), min_weight, max_weight)

``old_weight`` is the value from the previous pass, so repeated passes over
unchanged data keep drifting whenever ``rate != avg_rate``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from pipeline_tuner.config import TemplateSettings
from pipeline_tuner.schemas import OutcomeRecord, TemplateWeightModel, utc_now_iso

logger = logging.getLogger(__name__)

UNLABELED = "unlabeled"


@dataclass
class PairStats:
    total: int = 0
    successes: int = 0

    @property
    def rate(self) -> float:
        return self.successes / self.total * 100 if self.total else 0.0


@dataclass
class TemplateTuningResult:
    model: TemplateWeightModel
    pairs: dict[str, PairStats] = field(default_factory=dict)
    avg_rate: float = 0.0
    updated_pairs: list[str] = field(default_factory=list)


def outcome_labels(record: OutcomeRecord) -> list[str]:
    """Comma-separated labels with all spaces removed; ``unlabeled`` when empty."""
    if not record.labels:
        return [UNLABELED]
    return [label.replace(" ", "") for label in record.labels.split(",") if label.replace(" ", "")]


def pair_key(template: str, label: str) -> str:
    return f"{template}|{label}"


def collect_pair_stats(records: Iterable[OutcomeRecord]) -> dict[str, PairStats]:
    """Count observations and successes for every (template, label) pair."""
    stats: dict[str, PairStats] = {}
    for record in records:
        for label in outcome_labels(record):
            entry = stats.setdefault(pair_key(record.template, label), PairStats())
            entry.total += 1
            if record.succeeded:
                entry.successes += 1
    return stats


def average_rate(stats: dict[str, PairStats]) -> float:
    """Flat success rate over every pair observation (not a mean of pair rates)."""
    total = sum(entry.total for entry in stats.values())
    if not total:
        return 0.0
    successes = sum(entry.successes for entry in stats.values())
    return round(successes / total * 100, 2)


def adjust_weight(
    old_weight: float,
    rate: float,
    avg_rate: float,
    *,
    min_weight: float = 0.1,
    max_weight: float = 2.0,
) -> float:
    """Proportional weight update clamped to ``[min_weight, max_weight]``."""
    if avg_rate <= 0:
        return old_weight
    weight = old_weight * (rate / avg_rate)
    return round(min(max_weight, max(min_weight, weight)), 3)


def tune_template_weights(
    records: Iterable[OutcomeRecord],
    current: TemplateWeightModel,
    settings: TemplateSettings | None = None,
) -> TemplateTuningResult:
    """Compute the next template weight model from the outcome log."""
    settings = settings or TemplateSettings()
    stats = collect_pair_stats(records)
    avg_rate = average_rate(stats)

    raw = current.raw_weights()
    updated: list[str] = []
    for key in sorted(stats):
        entry = stats[key]
        old_weight = raw.get(key, 1.0)
        new_weight = old_weight
        if entry.total >= settings.min_samples:
            new_weight = adjust_weight(
                old_weight,
                round(entry.rate, 2),
                avg_rate,
                min_weight=settings.min_weight,
                max_weight=settings.max_weight,
            )
            updated.append(key)
            logger.debug(
                "%s: rate=%.2f avg=%.2f weight %.3f -> %.3f",
                key,
                entry.rate,
                avg_rate,
                old_weight,
                new_weight,
            )
        raw[key] = new_weight

    model = TemplateWeightModel.from_raw_weights(raw, updated_at=utc_now_iso())
    return TemplateTuningResult(model=model, pairs=stats, avg_rate=avg_rate, updated_pairs=updated)
