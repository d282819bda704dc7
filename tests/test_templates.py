"""Tests for (template, label) weight tuning."""

from __future__ import annotations

import pytest

from pipeline_tuner.config import TemplateSettings
from pipeline_tuner.schemas import OutcomeRecord, TemplateWeightModel
from pipeline_tuner.tuning.templates import (
    adjust_weight,
    average_rate,
    collect_pair_stats,
    outcome_labels,
    tune_template_weights,
)

pytestmark = pytest.mark.unit


def _rows(template: str, label: str, successes: int, failures: int) -> list[OutcomeRecord]:
    ok = [OutcomeRecord(template=template, labels=label, result="success") for _ in range(successes)]
    bad = [OutcomeRecord(template=template, labels=label, result="failure") for _ in range(failures)]
    return ok + bad


@pytest.mark.parametrize(
    ("rate", "avg", "expected"),
    [(80, 50, 1.6), (10, 50, 0.2), (100, 10, 2.0), (1, 100, 0.1)],
)
def test_adjust_weight_scales_and_clamps(rate: float, avg: float, expected: float) -> None:
    assert adjust_weight(1.0, rate, avg) == pytest.approx(expected)


def test_adjust_weight_keeps_old_weight_without_average() -> None:
    assert adjust_weight(0.7, 50, 0) == 0.7


def test_outcome_labels_strip_spaces_and_default() -> None:
    assert outcome_labels(OutcomeRecord(labels="bug, front end")) == ["bug", "frontend"]
    assert outcome_labels(OutcomeRecord()) == ["unlabeled"]


def test_average_rate_is_flat_over_observations() -> None:
    records = _rows("A", "auth", 1, 9) + _rows("B", "ui", 1, 0)
    stats = collect_pair_stats(records)

    # (1 + 1) / 11 rather than the mean of 10% and 100%
    assert average_rate(stats) == pytest.approx(18.18)


def test_tuning_separates_good_and_bad_templates() -> None:
    records = _rows("A", "auth", 1, 5) + _rows("B", "auth", 6, 0)

    result = tune_template_weights(records, TemplateWeightModel())

    assert result.avg_rate == pytest.approx(58.33)
    assert result.model.weight_for("A", "auth") < 1.0
    assert result.model.weight_for("B", "auth") > 1.0
    assert sorted(result.updated_pairs) == ["A|auth", "B|auth"]


def test_pairs_below_min_samples_keep_current_weight() -> None:
    records = _rows("A", "auth", 0, 4) + _rows("B", "auth", 6, 0)
    current = TemplateWeightModel.from_raw_weights({"A|auth": 0.8})

    result = tune_template_weights(records, current)

    assert result.model.weight_for("A", "auth") == 0.8
    assert result.updated_pairs == ["B|auth"]


def test_repeated_passes_keep_drifting_from_persisted_weight() -> None:
    records = _rows("A", "auth", 1, 5) + _rows("B", "auth", 6, 0)

    first = tune_template_weights(records, TemplateWeightModel())
    second = tune_template_weights(records, first.model)

    assert second.model.weight_for("A", "auth") < first.model.weight_for("A", "auth")
    assert second.model.weight_for("B", "auth") > first.model.weight_for("B", "auth")


def test_weights_stay_in_configured_range() -> None:
    settings = TemplateSettings(min_weight=0.5, max_weight=1.5)
    records = _rows("A", "auth", 0, 10) + _rows("B", "auth", 10, 0)

    model = TemplateWeightModel()
    for _ in range(5):
        model = tune_template_weights(records, model, settings).model

    for weight in model.raw_weights().values():
        assert 0.5 <= weight <= 1.5


def test_pairs_absent_from_log_are_preserved() -> None:
    current = TemplateWeightModel.from_raw_weights({"old|legacy": 1.3})

    result = tune_template_weights(_rows("B", "auth", 6, 0), current)

    assert result.model.weight_for("old", "legacy") == 1.3
