"""Pydantic models for outcome records and every persisted tuning model."""

from __future__ import annotations

import logging
import math
import re
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from pipeline_tuner.file_io import read_json_dict, write_json_atomic

logger = logging.getLogger(__name__)

SUCCESS_RESULTS = frozenset({"success", "completed"})
STAGE_SUCCESS_STATUSES = frozenset({"complete", "completed", "success"})

_KEYWORD_STRIP_RE = re.compile(r"[^a-z0-9-]")
_KEYWORD_SPLIT_RE = re.compile(r"[,\s]+")


def utc_now_iso(now: datetime | None = None) -> str:
    """Return a second-resolution UTC timestamp such as ``2026-01-31T12:00:00Z``."""
    moment = now or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_utc_iso(value: str | None) -> datetime | None:
    text = str(value or "").strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalize_keyword(token: str) -> str:
    """Lowercase ``token`` and keep only ``[a-z0-9-]`` characters."""
    return _KEYWORD_STRIP_RE.sub("", str(token or "").lower())


def split_keywords(text: str, *, min_length: int = 3) -> list[str]:
    """Split free text on commas/whitespace into normalized keywords."""
    out: list[str] = []
    for token in _KEYWORD_SPLIT_RE.split(str(text or "")):
        kw = normalize_keyword(token)
        if len(kw) >= min_length:
            out.append(kw)
    return out


def coerce_int(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 0
    try:
        number = float(str(value).strip().lstrip("$#"))
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return int(number)


def coerce_float(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(str(value).strip().lstrip("$"))
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def coerce_text(value: Any, default: str) -> str:
    if value is None:
        return default
    text = str(value).strip()
    return text or default


# ---------------------------------------------------------------------------
# Persistence base
# ---------------------------------------------------------------------------


class PersistedModel(BaseModel):
    """A model stored as one JSON file and replaced atomically on save."""

    @classmethod
    def _from_payload(cls, data: dict[str, Any]) -> PersistedModel:
        return cls.model_validate(data)

    def _to_payload(self) -> Any:
        return self.model_dump(mode="json")

    @classmethod
    def load(cls, path: Path) -> Any:
        """Load from ``path``; missing, corrupt or invalid content yields defaults."""
        data = read_json_dict(path)
        if not data:
            return cls()
        try:
            return cls._from_payload(data)
        except (ValidationError, ValueError, TypeError) as exc:
            logger.warning("Invalid %s in %s; using defaults: %s", cls.__name__, path, exc)
            return cls()

    def save(self, path: Path) -> bool:
        """Persist atomically. On failure the previous file stays intact."""
        try:
            write_json_atomic(path, self._to_payload())
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Could not write %s to %s: %s", type(self).__name__, path, exc)
            return False
        return True


# ---------------------------------------------------------------------------
# Outcome log rows
# ---------------------------------------------------------------------------


class StageResult(BaseModel):
    """Final status of one pipeline stage."""

    name: str = "unknown"
    status: str = "unknown"

    @field_validator("name", "status", mode="before")
    @classmethod
    def _default_text(cls, value: Any) -> str:
        return coerce_text(value, "unknown")

    @property
    def succeeded(self) -> bool:
        return self.status.lower() in STAGE_SUCCESS_STATUSES


class OutcomeRecord(BaseModel):
    """One completed pipeline run. Created once and never mutated."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    ts: str = Field(default_factory=utc_now_iso)
    issue_id: str = Field(default="unknown", validation_alias=AliasChoices("issue_id", "issue"))
    template: str = "unknown"
    result: str = "unknown"
    model: str = "unknown"
    labels: str = ""
    iterations: int = 0
    cost: float = 0.0
    complexity: int = 0
    stages: list[StageResult] = Field(default_factory=list)

    @field_validator("ts", mode="before")
    @classmethod
    def _ts_text(cls, value: Any) -> str:
        return coerce_text(value, "")

    @field_validator("issue_id", "template", "result", "model", mode="before")
    @classmethod
    def _default_text(cls, value: Any) -> str:
        return coerce_text(value, "unknown")

    @field_validator("labels", mode="before")
    @classmethod
    def _labels_text(cls, value: Any) -> str:
        return coerce_text(value, "")

    @field_validator("iterations", "complexity", mode="before")
    @classmethod
    def _non_negative_int(cls, value: Any) -> int:
        return max(0, coerce_int(value))

    @field_validator("cost", mode="before")
    @classmethod
    def _non_negative_cost(cls, value: Any) -> float:
        return max(0.0, coerce_float(value))

    @field_validator("stages", mode="before")
    @classmethod
    def _stage_list(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, (dict, StageResult))]

    @property
    def succeeded(self) -> bool:
        return self.result in SUCCESS_RESULTS

    @property
    def timestamp(self) -> datetime | None:
        return parse_utc_iso(self.ts)


class CIMetricsRecord(BaseModel):
    """CI health snapshot appended to the outcome log next to an outcome."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    ts: str = Field(default_factory=utc_now_iso)
    type: Literal["ci_metrics"] = "ci_metrics"
    issue_id: str = Field(default="unknown", validation_alias=AliasChoices("issue_id", "issue"))
    ci_success_rate: int = Field(default=0, ge=0, le=100)
    ci_avg_duration_s: int = Field(default=0, ge=0)

    @field_validator("ci_success_rate", "ci_avg_duration_s", mode="before")
    @classmethod
    def _int_value(cls, value: Any) -> int:
        return coerce_int(value)


class PredictionValidation(BaseModel):
    """Prediction-vs-actual row written by the external complexity predictor."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    ts: str = ""
    issue_id: str = Field(default="unknown", validation_alias=AliasChoices("issue_id", "issue"))
    predicted_complexity: float = 0.0
    actual_complexity: float = 0.0
    delta: float = 0.0

    @field_validator("predicted_complexity", "actual_complexity", "delta", mode="before")
    @classmethod
    def _float_value(cls, value: Any) -> float:
        return coerce_float(value)

    @field_validator("issue_id", mode="before")
    @classmethod
    def _issue_text(cls, value: Any) -> str:
        return coerce_text(value, "unknown")


# ---------------------------------------------------------------------------
# Template weights
# ---------------------------------------------------------------------------


class TemplateStats(BaseModel):
    """Per-template view over its (template, label) weights."""

    success_rate: float = 0.0
    sample_size: int = 0
    raw_weights: dict[str, float] = Field(default_factory=dict)


class TemplateWeightModel(PersistedModel):
    """Selection weights keyed ``"template|label"``, grouped by template."""

    weights: dict[str, TemplateStats] = Field(default_factory=dict)
    updated_at: str | None = None

    @classmethod
    def _from_payload(cls, data: dict[str, Any]) -> TemplateWeightModel:
        if "weights" not in data and data and all("|" in str(k) for k in data):
            # Flat ``{"template|label": weight}`` files from older writers.
            return cls.from_raw_weights({str(k): coerce_float(v) for k, v in data.items()})
        return cls.model_validate(data)

    @classmethod
    def from_raw_weights(
        cls,
        raw: dict[str, float],
        *,
        updated_at: str | None = None,
    ) -> TemplateWeightModel:
        grouped: dict[str, dict[str, float]] = {}
        for key in sorted(raw):
            template = key.split("|", 1)[0]
            grouped.setdefault(template, {})[key] = raw[key]
        weights = {
            template: TemplateStats(
                success_rate=sum(pairs.values()) / len(pairs),
                sample_size=len(pairs),
                raw_weights=pairs,
            )
            for template, pairs in grouped.items()
        }
        return cls(weights=weights, updated_at=updated_at)

    def raw_weights(self) -> dict[str, float]:
        merged: dict[str, float] = {}
        for stats in self.weights.values():
            merged.update(stats.raw_weights)
        return merged

    def weight_for(self, template: str, label: str, default: float = 1.0) -> float:
        stats = self.weights.get(template)
        if stats is None:
            return default
        return stats.raw_weights.get(f"{template}|{label}", default)


# ---------------------------------------------------------------------------
# Complexity tiers and iteration prediction
# ---------------------------------------------------------------------------


class Tier(str, Enum):
    """Complexity classification used for prediction and routing."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ComplexityBuckets(PersistedModel):
    """Adaptive tier boundaries: ``1 <= low_max < med_max <= 8``."""

    low_max: int = 3
    med_max: int = 6
    samples: int = 0
    updated: str | None = None

    @model_validator(mode="after")
    def _check_order(self) -> ComplexityBuckets:
        if not 1 <= self.low_max < self.med_max <= 8:
            raise ValueError(
                f"invalid boundaries low_max={self.low_max} med_max={self.med_max}"
            )
        return self

    def bucket_for(self, complexity: float) -> Tier:
        if complexity <= self.low_max:
            return Tier.LOW
        if complexity <= self.med_max:
            return Tier.MEDIUM
        return Tier.HIGH


class TierStats(BaseModel):
    """Iteration statistics and recommended cap for one tier."""

    max_iterations: int
    confidence: float = 0.4
    mean: float = 0.0
    stddev: float = 0.0
    samples: int = 0
    bias_correction: float | None = None


class IterationModel(PersistedModel):
    """Three-tier iteration prediction model."""

    low: TierStats = Field(default_factory=lambda: TierStats(max_iterations=10))
    medium: TierStats = Field(default_factory=lambda: TierStats(max_iterations=20))
    high: TierStats = Field(default_factory=lambda: TierStats(max_iterations=30))
    updated_at: str | None = None

    def tier(self, tier: Tier) -> TierStats:
        return getattr(self, tier.value)

    def estimate(self, complexity: float, buckets: ComplexityBuckets) -> TierStats:
        """Return the tier statistics that apply to a complexity score."""
        return self.tier(buckets.bucket_for(complexity))


# ---------------------------------------------------------------------------
# Model routing
# ---------------------------------------------------------------------------


class RouteDecision(BaseModel):
    """Recommended execution tier for one pipeline stage."""

    recommended_model: str
    confidence: float = 0.5
    success_rate_per_model: dict[str, float] = Field(default_factory=dict)
    sample_count_per_model: dict[str, int] = Field(default_factory=dict)


class ModelRoutingTable(PersistedModel):
    routes: dict[str, RouteDecision] = Field(default_factory=dict)
    updated_at: str | None = None

    def recommend(self, stage: str, default: str) -> str:
        decision = self.routes.get(stage)
        return decision.recommended_model if decision else default


# ---------------------------------------------------------------------------
# Risk keywords
# ---------------------------------------------------------------------------


class RiskKeywordTable(PersistedModel):
    """Keyword -> integer risk weight, stored as a flat JSON object."""

    weights: dict[str, int] = Field(default_factory=dict)

    @classmethod
    def _from_payload(cls, data: dict[str, Any]) -> RiskKeywordTable:
        return cls(weights={str(k): coerce_int(v) for k, v in data.items()})

    def _to_payload(self) -> dict[str, int]:
        return dict(sorted(self.weights.items()))

    def score(self, text: str) -> int:
        """Sum the weights of every distinct known keyword found in ``text``."""
        seen = set(split_keywords(text, min_length=1))
        return sum(weight for kw, weight in self.weights.items() if kw in seen)


# ---------------------------------------------------------------------------
# Failure memory
# ---------------------------------------------------------------------------


class MemoryFailureEntry(BaseModel):
    """A recurring failure pattern recorded for one repository."""

    model_config = ConfigDict(extra="allow")

    pattern: str
    stage: str = "unknown"
    root_cause: str = ""
    fix: str = ""
    seen_count: int = 1
    last_seen: str | None = None
    weight: float = 1.0

    @field_validator("seen_count", mode="before")
    @classmethod
    def _seen_count(cls, value: Any) -> int:
        return coerce_int(value)

    @field_validator("weight", mode="before")
    @classmethod
    def _weight(cls, value: Any) -> float:
        return 1.0 if value is None else coerce_float(value)

    @property
    def last_seen_at(self) -> datetime | None:
        return parse_utc_iso(self.last_seen)


def _valid_entries(model: type[BaseModel], rows: Any, where: str) -> list[Any]:
    """Validate list items one by one, dropping (and logging) the bad ones."""
    if not isinstance(rows, list):
        if rows is not None:
            logger.warning("Ignoring non-list %s entries", where)
        return []
    entries: list[Any] = []
    for index, row in enumerate(rows):
        try:
            entries.append(model.model_validate(row))
        except ValidationError as exc:
            logger.warning("Skip invalid %s entry %d: %s", where, index, exc.errors()[:1])
    return entries


class FailureStore(PersistedModel):
    model_config = ConfigDict(extra="allow")

    failures: list[MemoryFailureEntry] = Field(default_factory=list)

    @classmethod
    def _from_payload(cls, data: dict[str, Any]) -> FailureStore:
        failures = _valid_entries(MemoryFailureEntry, data.get("failures"), "failure store")
        return cls.model_validate({**data, "failures": failures})


class GlobalPromotedPattern(BaseModel):
    model_config = ConfigDict(extra="allow")

    pattern: str
    promoted_at: str = Field(default_factory=utc_now_iso)
    source: str = "cross-repo"


class GlobalMemory(PersistedModel):
    """Shared store of patterns promoted out of per-repository stores."""

    model_config = ConfigDict(extra="allow")

    common_patterns: list[GlobalPromotedPattern] = Field(default_factory=list)
    cross_repo_learnings: list[Any] = Field(default_factory=list)

    @classmethod
    def _from_payload(cls, data: dict[str, Any]) -> GlobalMemory:
        patterns = _valid_entries(GlobalPromotedPattern, data.get("common_patterns"), "global pattern")
        return cls.model_validate({**data, "common_patterns": patterns})

    def has_pattern(self, pattern: str) -> bool:
        return any(entry.pattern == pattern for entry in self.common_patterns)
