"""Shared pytest configuration: markers, ordering and a per-test state home."""

from __future__ import annotations

from pathlib import Path

import pytest

from pipeline_tuner.config import TunerSettings, load_settings


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: filesystem/CLI integration tests")
    config.addinivalue_line("markers", "slow: tests over large synthetic outcome logs")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run fast unit tests first, integration tests second, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


@pytest.fixture
def tuner_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    home = tmp_path / "tuner-home"
    monkeypatch.setenv("PIPELINE_TUNER_HOME", str(home))
    monkeypatch.setenv("NO_GITHUB", "true")
    return home


@pytest.fixture
def settings(tuner_home: Path) -> TunerSettings:
    return load_settings(home=tuner_home, ci_metrics_enabled=False)
