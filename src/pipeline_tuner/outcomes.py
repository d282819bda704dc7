"""Outcome recording: pipeline state file -> structured row in the outcome log.

A pipeline state file is plain ``key: value`` text followed by a stages
block terminated by ``---``::

    issue: #42
    template: standard
    status: success
    iterations: 10
    cost: $3.50
    complexity: 5
    model: opus
    labels: bug,frontend
    stages:
      intake: complete
      build: failed
    ---
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ValidationError

from pipeline_tuner.ci_metrics import CIMetrics, fetch_ci_metrics
from pipeline_tuner.config import TunerSettings
from pipeline_tuner.errors import StateFileError
from pipeline_tuner.events import EventLog
from pipeline_tuner.file_io import append_jsonl, iter_jsonl, rotate_jsonl
from pipeline_tuner.schemas import CIMetricsRecord, OutcomeRecord, StageResult

logger = logging.getLogger(__name__)

_KEY_LINE_RE = re.compile(r"^([a-z_]+):[ \t]*(.*)$")

# state-file key -> record field
_STATE_FIELDS: dict[str, str] = {
    "issue": "issue_id",
    "template": "template",
    "status": "result",
    "iterations": "iterations",
    "cost": "cost",
    "complexity": "complexity",
    "model": "model",
    "labels": "labels",
}

CIFetcher = Callable[..., CIMetrics | None]


@dataclass
class OutcomeLog:
    """Parsed contents of the outcome log."""

    records: list[OutcomeRecord] = field(default_factory=list)
    ci_metrics: list[CIMetricsRecord] = field(default_factory=list)
    skipped: int = 0


def _clean_value(key: str, value: str) -> str:
    if key == "labels":
        return value.strip()
    cleaned = value.replace(" ", "").replace("\t", "")
    if key == "issue":
        cleaned = cleaned.lstrip("#")
    elif key == "cost":
        cleaned = cleaned.lstrip("$")
    return cleaned


def _parse_stages(lines: list[str]) -> list[StageResult]:
    stages: list[StageResult] = []
    in_block = False
    for line in lines:
        if not in_block:
            if line.startswith("stages:"):
                in_block = True
            continue
        if line.startswith("---"):
            break
        if ":" not in line:
            continue
        name = line.split(":", 1)[0].replace(" ", "").replace("\t", "")
        status = line.rsplit(":", 1)[1].strip().replace(" ", "")
        if not name or name == "stages":
            continue
        stages.append(StageResult(name=name, status=status or "unknown"))
    return stages


def parse_state_text(text: str, *, default_model: str = "opus") -> OutcomeRecord:
    """Parse a pipeline state description into an :class:`OutcomeRecord`.

    Only the first occurrence of each key counts. Absent or non-numeric
    values fall back to ``unknown`` / ``0``. Raises :class:`StateFileError`
    when no recognised key is present.
    """
    lines = text.splitlines()
    values: dict[str, str] = {}
    for line in lines:
        match = _KEY_LINE_RE.match(line)
        if not match:
            continue
        key, raw = match.group(1), match.group(2)
        if key in _STATE_FIELDS and key not in values:
            values[key] = _clean_value(key, raw)

    if not values:
        raise StateFileError("no recognised pipeline state keys found")

    data: dict[str, object] = {_STATE_FIELDS[k]: v for k, v in values.items() if v != ""}
    data.setdefault("model", default_model)
    data["stages"] = _parse_stages(lines)
    return OutcomeRecord.model_validate(data)


def load_outcomes(path: Path, *, default_model: str | None = None) -> OutcomeLog:
    """Read the outcome log, separating CI rows and skipping invalid rows.

    Outcome rows without a ``model`` are attributed to ``default_model``
    when one is given.
    """
    log = OutcomeLog()
    for row in iter_jsonl(path):
        try:
            if row.get("type") == "ci_metrics":
                log.ci_metrics.append(CIMetricsRecord.model_validate(row))
            else:
                if default_model and not str(row.get("model") or "").strip():
                    row = {**row, "model": default_model}
                log.records.append(OutcomeRecord.model_validate(row))
        except ValidationError as exc:
            log.skipped += 1
            logger.warning("Skip invalid outcome row in %s: %s", path, exc.errors()[:1])
    return log


def _collect_ci_metrics(settings: TunerSettings, fetcher: CIFetcher) -> CIMetrics | None:
    if not settings.ci_metrics_enabled:
        return None
    try:
        return fetcher(timeout=settings.ci_metrics_timeout_s)
    except Exception as exc:
        logger.warning("CI metrics fetch failed: %s", exc)
        return None


def record_outcome(
    state_file: Path,
    settings: TunerSettings,
    *,
    events: EventLog | None = None,
    ci_fetcher: CIFetcher = fetch_ci_metrics,
) -> OutcomeRecord:
    """Append the outcome of one completed pipeline to the outcome log."""
    state_file = Path(state_file)
    if not state_file.is_file():
        raise StateFileError(f"Pipeline state file not found: {state_file}")
    try:
        text = state_file.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise StateFileError(f"Could not read pipeline state file {state_file}: {exc}") from exc

    try:
        record = parse_state_text(text, default_model=settings.routing.expensive_model)
    except StateFileError as exc:
        raise StateFileError(f"{state_file}: {exc}") from exc

    outcomes_path = settings.outcomes_path
    append_jsonl(outcomes_path, record.model_dump(mode="json"))
    rotate_jsonl(outcomes_path, settings.outcome_log_max_lines)

    metrics = _collect_ci_metrics(settings, ci_fetcher)
    if metrics is not None and metrics.has_data:
        ci_record = CIMetricsRecord(
            issue_id=record.issue_id,
            ci_success_rate=min(100, metrics.success_rate),
            ci_avg_duration_s=metrics.avg_duration_s,
        )
        append_jsonl(outcomes_path, ci_record.model_dump(mode="json"))
        if 0 < metrics.success_rate < settings.ci_warn_below_rate:
            logger.warning(
                "CI success rate is %d%% - consider template escalation", metrics.success_rate
            )

    events = events or EventLog(settings.events_path)
    events.emit(
        "optimize.outcome_analyzed",
        issue=record.issue_id,
        template=record.template,
        result=record.result,
        iterations=record.iterations,
        cost=record.cost,
    )
    logger.info("Outcome recorded for issue #%s (%s)", record.issue_id, record.result)
    return record
