"""Tests for per-stage execution-tier routing."""

from __future__ import annotations

import random

import pytest

from pipeline_tuner.config import RoutingSettings
from pipeline_tuner.schemas import OutcomeRecord, StageResult
from pipeline_tuner.tuning.routing import confidence_for, route_models, should_ab_test

pytestmark = pytest.mark.unit


def _run(model: str, **stages: str) -> OutcomeRecord:
    return OutcomeRecord(
        model=model,
        stages=[StageResult(name=name, status=status) for name, status in stages.items()],
    )


def test_reliable_cheap_stage_switches_to_cheap() -> None:
    records = [_run("sonnet", build="complete")] * 3 + [_run("opus", build="failed")] * 2

    result = route_models(records)

    decision = result.table.routes["build"]
    assert decision.recommended_model == "sonnet"
    assert decision.success_rate_per_model == {"sonnet": 100.0, "opus": 0.0}
    assert decision.sample_count_per_model == {"sonnet": 3, "opus": 2}
    assert decision.confidence == 0.7
    assert result.switched_to_cheap == ["build"]


def test_too_few_cheap_samples_keeps_expensive() -> None:
    records = [_run("sonnet", review="complete")] * 2

    decision = route_models(records).table.routes["review"]

    assert decision.recommended_model == "opus"
    assert decision.confidence == 0.5


def test_cheap_success_below_threshold_keeps_expensive() -> None:
    records = [_run("sonnet", test="complete")] * 9 + [_run("sonnet", test="failed")] * 2

    result = route_models(records)

    decision = result.table.routes["test"]
    assert decision.recommended_model == "opus"
    assert decision.success_rate_per_model["sonnet"] == 81.8
    assert decision.confidence == 0.9
    assert result.switched_to_cheap == []


def test_other_tiers_are_ignored() -> None:
    records = [_run("haiku", build="complete")] * 10

    decision = route_models(records).table.routes["build"]

    assert decision.recommended_model == "opus"
    assert decision.sample_count_per_model == {"sonnet": 0, "opus": 0}


def test_tier_names_come_from_settings() -> None:
    settings = RoutingSettings(cheap_model="small", expensive_model="large")
    records = [_run("small", plan="success")] * 3

    assert route_models(records, settings).table.recommend("plan", "large") == "small"


@pytest.mark.parametrize(("samples", "expected"), [(0, 0.5), (5, 0.7), (9, 0.7), (10, 0.9)])
def test_confidence_steps(samples: int, expected: float) -> None:
    assert confidence_for(samples) == expected


def test_should_ab_test_rolls_about_one_in_five() -> None:
    rng = random.Random(1234)
    hits = sum(should_ab_test(rng) for _ in range(2000))

    assert 300 < hits < 500
    assert should_ab_test(rng, threshold=0) is False
    assert should_ab_test(rng, threshold=100) is True
