"""Tests for decayed risk keyword learning."""

from __future__ import annotations

import pytest

from pipeline_tuner.schemas import OutcomeRecord
from pipeline_tuner.tuning.risk import decayed_weight, learn_risk_keywords, result_delta

pytestmark = pytest.mark.unit


def _outcome(labels: str, result: str) -> OutcomeRecord:
    return OutcomeRecord(labels=labels, result=result)


def test_failure_failure_success_sequence() -> None:
    records = [_outcome("auth", "failure")]
    assert learn_risk_keywords(records).table.weights == {"auth": 5}

    records.append(_outcome("auth", "error"))
    assert learn_risk_keywords(records).table.weights == {"auth": 10}

    records.append(_outcome("auth", "success"))
    assert learn_risk_keywords(records).table.weights == {"auth": 8}


@pytest.mark.parametrize(
    ("result", "expected"),
    [("failure", 5), ("failed", 5), ("error", 5), ("success", -2), ("complete", -2), ("completed", -2), ("unknown", 0)],
)
def test_result_delta(result: str, expected: int) -> None:
    assert result_delta(result) == expected


def test_weights_are_clamped() -> None:
    assert decayed_weight(50, 5) == 50
    assert decayed_weight(-50, -2) == -50


def test_keywords_are_normalized_and_short_tokens_dropped() -> None:
    table = learn_risk_keywords([_outcome("DB, Data-Migration  ui!", "failure")]).table

    assert table.weights == {"data-migration": 5}


def test_zero_weight_keywords_are_removed() -> None:
    # -2, -4, 1, -1, -3, 2, 0
    sequence = ["success", "success", "failure", "success", "success", "failure", "success"]
    records = [_outcome("flaky", result) for result in sequence]
    records.append(_outcome("auth", "failure"))

    result = learn_risk_keywords(records)

    assert result.table.weights == {"auth": 5}
    assert result.changed


def test_negative_weights_are_kept() -> None:
    records = [_outcome("calm", r) for r in ("success", "failure", "success", "success")]

    # -2, 3, 1, -1
    assert learn_risk_keywords(records).table.weights == {"calm": -1}


def test_unknown_results_and_unlabelled_rows_do_not_update() -> None:
    result = learn_risk_keywords([_outcome("auth", "unknown"), _outcome("", "failure")])

    assert result.updates == 0
    assert not result.changed
    assert result.table.weights == {}
