"""Risk keyword learning from outcome labels.

Each keyword carries a decayed reinforcement weight, replayed over the
whole outcome log from an empty table on every pass::

    new = clamp(round(old * decay + delta), -max_weight, max_weight)

``delta`` is ``+learn_rate`` for failed runs, ``-(learn_rate // 2)`` for
successful ones and 0 (no update) otherwise. Keywords that end at exactly
0 are dropped.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from pipeline_tuner.config import RiskSettings
from pipeline_tuner.schemas import OutcomeRecord, RiskKeywordTable, split_keywords

logger = logging.getLogger(__name__)

FAILURE_RESULTS = frozenset({"failure", "failed", "error"})
RISK_SUCCESS_RESULTS = frozenset({"success", "complete", "completed"})


@dataclass
class RiskLearningResult:
    table: RiskKeywordTable
    updates: int = 0

    @property
    def changed(self) -> bool:
        return self.updates > 0


def result_delta(result: str, learn_rate: int = 5) -> int:
    if result in FAILURE_RESULTS:
        return learn_rate
    if result in RISK_SUCCESS_RESULTS:
        return -(learn_rate // 2)
    return 0


def decayed_weight(old: int, delta: int, *, decay: float = 0.95, limit: int = 50) -> int:
    return max(-limit, min(limit, round(old * decay + delta)))


def learn_risk_keywords(
    records: Iterable[OutcomeRecord],
    settings: RiskSettings | None = None,
) -> RiskLearningResult:
    settings = settings or RiskSettings()
    weights: dict[str, int] = {}
    updates = 0
    for record in records:
        if not record.labels:
            continue
        delta = result_delta(record.result, settings.learn_rate)
        if delta == 0:
            continue
        for keyword in split_keywords(record.labels, min_length=settings.min_keyword_length):
            weights[keyword] = decayed_weight(
                weights.get(keyword, 0),
                delta,
                decay=settings.decay,
                limit=settings.max_weight,
            )
            updates += 1

    pruned = {kw: w for kw, w in weights.items() if w != 0}
    if len(pruned) != len(weights):
        logger.debug("Dropped %d zero-weight keyword(s)", len(weights) - len(pruned))
    return RiskLearningResult(table=RiskKeywordTable(weights=pruned), updates=updates)
