"""Tests for parsing pipeline state files and recording outcomes."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from pipeline_tuner.ci_metrics import CIMetrics
from pipeline_tuner.config import TunerSettings
from pipeline_tuner.errors import StateFileError
from pipeline_tuner.outcomes import load_outcomes, parse_state_text, record_outcome

STATE_TEXT = """\
issue: #42
template: standard
status: success
iterations: 10
cost: $3.50
complexity: 5
model: sonnet
labels: bug, frontend
stages:
  intake: complete
  build: failed
  test: complete
---
notes: ignored
"""


@pytest.mark.unit
class TestParseStateText:
    def test_parses_every_field(self):
        record = parse_state_text(STATE_TEXT)
        assert record.issue_id == "42"
        assert record.template == "standard"
        assert record.result == "success"
        assert record.iterations == 10
        assert record.cost == 3.5
        assert record.complexity == 5
        assert record.model == "sonnet"
        assert record.labels == "bug, frontend"
        assert [(s.name, s.status) for s in record.stages] == [
            ("intake", "complete"),
            ("build", "failed"),
            ("test", "complete"),
        ]

    def test_absent_fields_default(self):
        record = parse_state_text("status: failure\n", default_model="opus")
        assert record.template == "unknown"
        assert record.iterations == 0
        assert record.cost == 0.0
        assert record.model == "opus"
        assert record.stages == []

    def test_first_occurrence_wins(self):
        record = parse_state_text("template: first\ntemplate: second\n")
        assert record.template == "first"

    def test_non_numeric_values_become_zero(self):
        record = parse_state_text("iterations: many\ncost: lots\n")
        assert record.iterations == 0
        assert record.cost == 0.0

    def test_no_known_keys_raises(self):
        with pytest.raises(StateFileError):
            parse_state_text("hello world\n")


@pytest.mark.integration
def test_record_outcome_appends_record_and_event(settings: TunerSettings, tmp_path: Path) -> None:
    state = tmp_path / "pipeline-state.md"
    state.write_text(STATE_TEXT, encoding="utf-8")

    record = record_outcome(state, settings, ci_fetcher=lambda **_: None)

    log = load_outcomes(settings.outcomes_path)
    assert log.records == [record]
    assert log.ci_metrics == []
    events = [json.loads(line) for line in settings.events_path.read_text(encoding="utf-8").splitlines()]
    assert events[-1]["type"] == "optimize.outcome_analyzed"
    assert events[-1]["issue"] == "42"
    assert events[-1]["cost"] == 3.5


@pytest.mark.integration
def test_record_outcome_appends_ci_metrics_and_warns_on_low_rate(
    tuner_home: Path,
    tmp_path: Path,
    caplog,
) -> None:
    settings = TunerSettings(home=tuner_home, ci_metrics_enabled=True)
    state = tmp_path / "state.md"
    state.write_text(STATE_TEXT, encoding="utf-8")

    with caplog.at_level("WARNING"):
        record_outcome(state, settings, ci_fetcher=lambda **_: CIMetrics(success_rate=50, avg_duration_s=120))

    log = load_outcomes(settings.outcomes_path)
    assert len(log.records) == 1
    assert log.ci_metrics[0].issue_id == "42"
    assert log.ci_metrics[0].ci_success_rate == 50
    assert "consider template escalation" in caplog.text


@pytest.mark.integration
def test_record_outcome_survives_failing_ci_fetch(tuner_home: Path, tmp_path: Path) -> None:
    settings = TunerSettings(home=tuner_home, ci_metrics_enabled=True)
    state = tmp_path / "state.md"
    state.write_text(STATE_TEXT, encoding="utf-8")

    def broken(**_kwargs):
        raise RuntimeError("network down")

    record_outcome(state, settings, ci_fetcher=broken)

    assert len(load_outcomes(settings.outcomes_path).records) == 1


@pytest.mark.integration
def test_record_outcome_missing_state_file_raises(settings: TunerSettings, tmp_path: Path) -> None:
    with pytest.raises(StateFileError):
        record_outcome(tmp_path / "missing.md", settings)
    assert not settings.outcomes_path.exists()


@pytest.mark.integration
def test_record_outcome_rotates_log(tuner_home: Path, tmp_path: Path) -> None:
    settings = TunerSettings(home=tuner_home, ci_metrics_enabled=False, outcome_log_max_lines=3)
    state = tmp_path / "state.md"
    for i in range(5):
        state.write_text(f"issue: {i}\nstatus: success\n", encoding="utf-8")
        record_outcome(state, settings)

    assert [r.issue_id for r in load_outcomes(settings.outcomes_path).records] == ["2", "3", "4"]


@pytest.mark.unit
def test_load_outcomes_separates_ci_rows_and_skips_invalid(tmp_path: Path) -> None:
    path = tmp_path / "outcomes.jsonl"
    rows = [
        {"issue": "1", "result": "success"},
        {"type": "ci_metrics", "issue_id": "1", "ci_success_rate": 80, "ci_avg_duration_s": 30},
        {"type": "ci_metrics", "ci_success_rate": 250},
    ]
    path.write_text("\n".join(json.dumps(r) for r in rows) + "\n", encoding="utf-8")

    log = load_outcomes(path)

    assert [r.issue_id for r in log.records] == ["1"]
    assert len(log.ci_metrics) == 1
    assert log.skipped == 1


@pytest.mark.unit
def test_load_outcomes_keeps_rows_with_null_fields(tmp_path: Path) -> None:
    path = tmp_path / "outcomes.jsonl"
    rows = [
        {"issue_id": "1", "result": "success", "stages": [{"name": "build", "status": None}]},
        {"issue_id": "2", "result": "failure", "ts": None, "stages": [{"name": None}, "junk", 7]},
        {"issue_id": "3", "result": "success", "ts": 1700000000},
    ]
    path.write_text("\n".join(json.dumps(r) for r in rows) + "\n", encoding="utf-8")

    log = load_outcomes(path)

    assert [r.issue_id for r in log.records] == ["1", "2", "3"]
    assert log.skipped == 0
    assert log.records[0].stages[0].status == "unknown"
    assert [s.name for s in log.records[1].stages] == ["unknown"]
    assert log.records[1].timestamp is None
    assert log.records[2].ts == "1700000000"


@pytest.mark.unit
def test_load_outcomes_attributes_missing_model_to_default(tmp_path: Path) -> None:
    path = tmp_path / "outcomes.jsonl"
    rows = [
        {"issue_id": "1"},
        {"issue_id": "2", "model": None},
        {"issue_id": "3", "model": "sonnet"},
    ]
    path.write_text("\n".join(json.dumps(r) for r in rows) + "\n", encoding="utf-8")

    assert [r.model for r in load_outcomes(path, default_model="opus").records] == ["opus", "opus", "sonnet"]
    assert [r.model for r in load_outcomes(path).records] == ["unknown", "unknown", "sonnet"]
