"""Raise review depth in the daemon config when quality scores sag."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from pipeline_tuner.config import TunerSettings
from pipeline_tuner.events import EventLog
from pipeline_tuner.file_io import read_json_dict, tail_jsonl, write_json_atomic
from pipeline_tuner.schemas import coerce_float

logger = logging.getLogger(__name__)

QUALITY_WINDOW = 10
DEFAULT_QUALITY_SCORE = 70.0
LOW_QUALITY_BELOW = 60
HIGH_QUALITY_ABOVE = 85

_AUDIT_FLAGS = ("adversarial_enabled", "architecture_enabled")


@dataclass
class AuditDecision:
    average: int
    first_half: int
    second_half: int
    action: str | None = None

    @property
    def declining(self) -> bool:
        return self.second_half < self.first_half


def quality_scores(path: Path, window: int = QUALITY_WINDOW) -> list[float]:
    scores: list[float] = []
    for row in tail_jsonl(path, window):
        raw = row.get("quality_score")
        scores.append(DEFAULT_QUALITY_SCORE if raw is None else coerce_float(raw))
    return scores


def assess_quality(scores: list[float]) -> AuditDecision | None:
    """Average the window and compare its first five rows against its last five."""
    if not scores:
        return None
    first, last = scores[:5], scores[-5:]
    decision = AuditDecision(
        average=round(sum(scores) / len(scores)),
        first_half=round(sum(first) / len(first)),
        second_half=round(sum(last) / len(last)),
    )
    if decision.declining or decision.average < LOW_QUALITY_BELOW:
        decision.action = "increase"
    elif decision.average > HIGH_QUALITY_ABOVE:
        decision.action = "maintain"
    return decision


def _enable_audits(config_path: Path) -> bool:
    config = read_json_dict(config_path)
    intelligence = config.get("intelligence")
    if not isinstance(intelligence, dict):
        intelligence = {}
    for flag in _AUDIT_FLAGS:
        intelligence[flag] = True
    config["intelligence"] = intelligence
    try:
        write_json_atomic(config_path, config)
    except (OSError, TypeError, ValueError) as exc:
        logger.warning("Could not update daemon config %s: %s", config_path, exc)
        return False
    return True


def adjust_audit_intensity(
    settings: TunerSettings,
    events: EventLog | None = None,
) -> AuditDecision | None:
    """Turn on the deeper review passes when recent quality is low or falling.

    Returns ``None`` when there is no quality history or no daemon config.
    """
    config_path = settings.daemon_config_path
    if not settings.quality_scores_path.is_file() or config_path is None or not config_path.is_file():
        return None

    decision = assess_quality(quality_scores(settings.quality_scores_path))
    if decision is None or decision.action is None:
        return decision

    events = events or EventLog(settings.events_path)
    if decision.action == "increase":
        if not _enable_audits(config_path):
            return decision
        logger.info(
            "Audit intensity increased (avg quality %d, trend %d -> %d)",
            decision.average,
            decision.first_half,
            decision.second_half,
        )
    events.emit(
        "optimize.audit_intensity",
        avg_quality=decision.average,
        declining=decision.declining,
        action=decision.action,
    )
    return decision
