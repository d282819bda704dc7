"""Rolling summary of recent outcomes and the persisted tuning models."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from pipeline_tuner.config import TunerSettings
from pipeline_tuner.events import EventLog
from pipeline_tuner.outcomes import load_outcomes
from pipeline_tuner.schemas import (
    IterationModel,
    ModelRoutingTable,
    OutcomeRecord,
    RiskKeywordTable,
    TemplateWeightModel,
    Tier,
)

logger = logging.getLogger(__name__)

_RULE = "  " + "-" * 33
_TOP_RISK_KEYWORDS = 10


@dataclass
class RecentSummary:
    pipelines: int = 0
    successes: int = 0
    total_cost: float = 0.0
    total_iterations: int = 0

    @property
    def success_rate(self) -> float:
        return round(self.successes / self.pipelines * 100, 1) if self.pipelines else 0.0

    @property
    def avg_cost(self) -> float:
        return round(self.total_cost / self.pipelines, 2) if self.pipelines else 0.0

    @property
    def avg_iterations(self) -> float:
        return round(self.total_iterations / self.pipelines, 1) if self.pipelines else 0.0


@dataclass
class ReportData:
    window_days: int
    has_outcomes: bool
    recent: RecentSummary = field(default_factory=RecentSummary)
    templates: TemplateWeightModel = field(default_factory=TemplateWeightModel)
    routing: ModelRoutingTable = field(default_factory=ModelRoutingTable)
    iterations: IterationModel = field(default_factory=IterationModel)
    risk: RiskKeywordTable = field(default_factory=RiskKeywordTable)


def summarize_recent(
    records: list[OutcomeRecord],
    *,
    window_days: int = 7,
    now: datetime | None = None,
) -> RecentSummary:
    """Aggregate outcomes whose timestamp falls inside the trailing window."""
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=window_days)
    summary = RecentSummary()
    for record in records:
        ts = record.timestamp
        if ts is None or ts < cutoff:
            continue
        summary.pipelines += 1
        if record.succeeded:
            summary.successes += 1
        summary.total_cost += record.cost
        summary.total_iterations += record.iterations
    summary.total_cost = round(summary.total_cost, 2)
    return summary


def build_report(settings: TunerSettings, *, now: datetime | None = None) -> ReportData:
    outcomes_exist = settings.outcomes_path.is_file()
    records = load_outcomes(settings.outcomes_path).records if outcomes_exist else []
    return ReportData(
        window_days=settings.report_window_days,
        has_outcomes=outcomes_exist,
        recent=summarize_recent(records, window_days=settings.report_window_days, now=now),
        templates=TemplateWeightModel.load(settings.template_weights_path),
        routing=ModelRoutingTable.load(settings.model_routing_path),
        iterations=IterationModel.load(settings.iteration_model_path),
        risk=RiskKeywordTable.load(settings.risk_keywords_path),
    )


def render_report(data: ReportData) -> str:
    """Plain-text rendering of :class:`ReportData`."""
    lines = ["Self-Optimization Report", ""]
    if not data.has_outcomes:
        lines.append("No outcomes data available yet")
        return "\n".join(lines) + "\n"

    recent = data.recent
    lines += [
        f"  Last {data.window_days} Days",
        _RULE,
        f"  Pipelines:       {recent.pipelines}",
        f"  Success rate:    {recent.success_rate:.1f}%",
        f"  Avg iterations:  {recent.avg_iterations:.1f}",
        f"  Avg cost:        ${recent.avg_cost:.2f}",
        f"  Total cost:      ${recent.total_cost:.2f}",
        "",
    ]

    raw = data.templates.raw_weights()
    if raw:
        lines += ["  Template Weights", _RULE]
        lines += [f"  {key}: {weight}" for key, weight in sorted(raw.items())]
        lines.append("")

    if data.routing.routes:
        lines += ["  Model Routing", _RULE]
        for stage, decision in sorted(data.routing.routes.items()):
            rates = ", ".join(
                f"{model}: {rate}%" for model, rate in decision.success_rate_per_model.items()
            )
            lines.append(
                f"  {stage}: {decision.recommended_model} ({rates}; confidence {decision.confidence})"
            )
        lines.append("")

    if any(data.iterations.tier(tier).samples for tier in Tier):
        lines += ["  Iteration Model", _RULE]
        for label, tier in (("Low", Tier.LOW), ("Med", Tier.MEDIUM), ("High", Tier.HIGH)):
            stats = data.iterations.tier(tier)
            lines.append(
                f"  {label + ' complexity:':<17}{stats.mean} +/- {stats.stddev} "
                f"({stats.samples} samples, max {stats.max_iterations})"
            )
        lines.append("")

    if data.risk.weights:
        lines += ["  Risk Keywords", _RULE]
        ranked = sorted(data.risk.weights.items(), key=lambda kv: (-kv[1], kv[0]))
        lines += [f"  {kw}: {weight}" for kw, weight in ranked[:_TOP_RISK_KEYWORDS]]
        lines.append("")

    return "\n".join(lines)


def run_report(
    settings: TunerSettings,
    events: EventLog | None = None,
    *,
    now: datetime | None = None,
) -> str:
    """Build and render the report, recording an ``optimize.report`` event."""
    data = build_report(settings, now=now)
    if not data.has_outcomes:
        logger.warning("No outcomes data available yet")
        return render_report(data)
    events = events or EventLog(settings.events_path)
    events.emit(
        "optimize.report",
        pipelines=data.recent.pipelines,
        success_rate=data.recent.success_rate,
        avg_cost=data.recent.avg_cost,
    )
    return render_report(data)
