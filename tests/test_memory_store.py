"""Tests for failure capture into per-repository stores."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from pipeline_tuner.events import EventLog
from pipeline_tuner.memory.store import capture_failure, extract_pattern, iter_repo_stores, repo_store_path
from pipeline_tuner.schemas import FailureStore

pytestmark = pytest.mark.unit

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_extract_pattern_prefers_diagnostic_line() -> None:
    output = "Running tests...\n   TypeError: Cannot read property 'x' of undefined\nDone"
    assert extract_pattern(output) == "TypeError: Cannot read property 'x' of undefined"


def test_extract_pattern_falls_back_to_first_line_and_truncates() -> None:
    output = "x" * 300 + "\nsecond"
    assert extract_pattern(output) == "x" * 200
    assert extract_pattern("") == ""


def test_capture_failure_creates_then_bumps_entry(tmp_path: Path) -> None:
    events = EventLog(tmp_path / "events.jsonl")

    first = capture_failure(tmp_path / "memory", "acme/api", "build", "error: missing module", events=events, now=NOW)
    second = capture_failure(tmp_path / "memory", "acme/api", "build", "error: missing module", now=NOW)

    store = FailureStore.load(repo_store_path(tmp_path / "memory", "acme/api"))
    assert first is not None and first.seen_count == 1
    assert second is not None and second.seen_count == 2
    assert len(store.failures) == 1
    assert store.failures[0].last_seen == "2026-03-01T12:00:00Z"
    assert store.failures[0].weight == 1.0
    event = json.loads((tmp_path / "events.jsonl").read_text(encoding="utf-8").splitlines()[0])
    assert event["type"] == "memory.failure"


def test_capture_failure_ignores_empty_output(tmp_path: Path) -> None:
    assert capture_failure(tmp_path, "repo", "test", "\n") is None
    assert list(iter_repo_stores(tmp_path)) == []


def test_capture_failure_caps_store(tmp_path: Path) -> None:
    for i in range(5):
        capture_failure(tmp_path, "repo", "test", f"error {i}", max_entries=3, now=NOW)

    store = FailureStore.load(repo_store_path(tmp_path, "repo"))
    assert [entry.pattern for entry in store.failures] == ["error 2", "error 3", "error 4"]


def test_iter_repo_stores_lists_only_repo_directories(tmp_path: Path) -> None:
    capture_failure(tmp_path, "b-repo", "build", "fail", now=NOW)
    capture_failure(tmp_path, "a-repo", "build", "fail", now=NOW)
    (tmp_path / "global.json").write_text("{}", encoding="utf-8")
    (tmp_path / "empty-dir").mkdir()

    assert [p.parent.name for p in iter_repo_stores(tmp_path)] == ["a-repo", "b-repo"]


def test_capture_failure_keeps_valid_entries_next_to_invalid_ones(tmp_path: Path, caplog) -> None:
    path = repo_store_path(tmp_path, "acme")
    path.parent.mkdir(parents=True)
    path.write_text(
        json.dumps(
            {
                "failures": [
                    {"pattern": "Error: keep me", "seen_count": 4, "weight": 2.25, "last_seen": "2026-02-28T00:00:00Z"},
                    {"stage": "build"},
                ]
            }
        ),
        encoding="utf-8",
    )

    with caplog.at_level("WARNING"):
        capture_failure(tmp_path, "acme", "test", "Error: new one", now=NOW)

    store = FailureStore.load(path)
    assert [entry.pattern for entry in store.failures] == ["Error: keep me", "Error: new one"]
    assert store.failures[0].weight == 2.25
    assert "Skip invalid failure store entry 1" in caplog.text
