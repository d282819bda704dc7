"""Tuning configuration: defaults, ``tuning.yaml`` overrides and state paths.

Settings resolve in this order (later wins):

1. Built-in defaults on :class:`TunerSettings`
2. ``<home>/tuning.yaml``
3. An explicit ``--config`` file
4. Keyword overrides passed to :func:`load_settings`

``<home>`` is ``$PIPELINE_TUNER_HOME`` or ``~/.pipeline_tuner``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)

HOME_ENV = "PIPELINE_TUNER_HOME"
SETTINGS_FILE = "tuning.yaml"


def default_home() -> Path:
    """Return the state root from the environment or the user's home."""
    raw = os.getenv(HOME_ENV, "").strip()
    if raw:
        return Path(raw).expanduser()
    return Path.home() / ".pipeline_tuner"


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML mapping, returning an empty dict on failure."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Failed to load %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: top level is not a mapping", path)
        return {}
    return data


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base* (override wins)."""
    merged = dict(base)
    for k, v in override.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


class TemplateSettings(BaseModel):
    min_samples: int = 5
    min_weight: float = 0.1
    max_weight: float = 2.0


class IterationSettings(BaseModel):
    min_cluster_samples: int = 50
    default_low_max: int = 3
    default_med_max: int = 6
    tier_floors: dict[str, int] = Field(
        default_factory=lambda: {"low": 5, "medium": 10, "high": 15}
    )
    tier_fallbacks: dict[str, int] = Field(
        default_factory=lambda: {"low": 10, "medium": 20, "high": 30}
    )
    bias_window: int = 50
    bias_min_samples: int = 5
    bias_threshold: float = 1.0
    bias_factor: float = 0.3


class RoutingSettings(BaseModel):
    cheap_model: str = "sonnet"
    expensive_model: str = "opus"
    min_samples: int = 3
    success_threshold: float = 90.0


class RiskSettings(BaseModel):
    decay: float = 0.95
    learn_rate: int = 5
    max_weight: int = 50
    min_keyword_length: int = 3


class MemorySettings(BaseModel):
    prune_days: int = 30
    boost_days: int = 7
    strength_threshold: int = 3
    promotion_threshold: int = 3
    boost_factor: float = 1.5
    max_failures_per_repo: int = 100


class TunerSettings(BaseModel):
    """Every constant the tuning pass depends on, plus where state lives."""

    home: Path = Field(default_factory=default_home)
    outcome_log_max_lines: int = 10_000
    validation_log_max_lines: int = 5_000
    report_window_days: int = 7
    ci_metrics_enabled: bool = True
    ci_metrics_timeout_s: int = 15
    ci_warn_below_rate: int = 70
    daemon_config_path: Path | None = None

    templates: TemplateSettings = Field(default_factory=TemplateSettings)
    iterations: IterationSettings = Field(default_factory=IterationSettings)
    routing: RoutingSettings = Field(default_factory=RoutingSettings)
    risk: RiskSettings = Field(default_factory=RiskSettings)
    memory: MemorySettings = Field(default_factory=MemorySettings)

    @model_validator(mode="after")
    def _check_ranges(self) -> TunerSettings:
        t = self.templates
        if not 0 < t.min_weight < t.max_weight:
            raise ValueError("templates.min_weight must be positive and below max_weight")
        if self.routing.cheap_model == self.routing.expensive_model:
            raise ValueError("routing.cheap_model and routing.expensive_model must differ")
        return self

    # -- paths --

    @property
    def optimization_dir(self) -> Path:
        return self.home / "optimization"

    @property
    def memory_root(self) -> Path:
        return self.home / "memory"

    @property
    def events_path(self) -> Path:
        return self.home / "events.jsonl"

    @property
    def outcomes_path(self) -> Path:
        return self.optimization_dir / "outcomes.jsonl"

    @property
    def template_weights_path(self) -> Path:
        return self.optimization_dir / "template-weights.json"

    @property
    def iteration_model_path(self) -> Path:
        return self.optimization_dir / "iteration-model.json"

    @property
    def model_routing_path(self) -> Path:
        return self.optimization_dir / "model-routing.json"

    @property
    def risk_keywords_path(self) -> Path:
        return self.optimization_dir / "risk-keywords.json"

    @property
    def complexity_clusters_path(self) -> Path:
        return self.optimization_dir / "complexity-clusters.json"

    @property
    def validation_log_path(self) -> Path:
        return self.optimization_dir / "prediction-validation.jsonl"

    @property
    def quality_scores_path(self) -> Path:
        return self.optimization_dir / "quality-scores.jsonl"

    @property
    def report_archive_path(self) -> Path:
        return self.optimization_dir / "last-report.txt"

    @property
    def global_memory_path(self) -> Path:
        return self.memory_root / "global.json"


def load_settings(
    config_path: Path | None = None,
    *,
    home: Path | None = None,
    **overrides: Any,
) -> TunerSettings:
    """Build settings from defaults, ``tuning.yaml`` and explicit overrides.

    A broken overrides file is logged and ignored rather than aborting the
    caller; invalid merged values fall back to the defaults.
    """
    root = Path(home).expanduser() if home is not None else default_home()
    data: dict[str, Any] = {}

    home_file = root / SETTINGS_FILE
    if home_file.exists():
        data = _deep_merge(data, _load_yaml(home_file))
        logger.debug("Loaded tuning overrides from %s", home_file)

    if config_path is not None:
        if config_path.exists():
            data = _deep_merge(data, _load_yaml(config_path))
            logger.info("Loaded tuning config from %s", config_path)
        else:
            logger.warning("Config file not found: %s", config_path)

    data = _deep_merge(data, overrides)
    data["home"] = root

    try:
        return TunerSettings.model_validate(data)
    except ValidationError as exc:
        logger.warning("Invalid tuning configuration, using defaults: %s", exc)
        return TunerSettings(home=root)
