"""One tuning pass: every learner in order, each isolated from the others' failures."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from pydantic import ValidationError

from pipeline_tuner.config import TunerSettings
from pipeline_tuner.events import EventLog
from pipeline_tuner.file_io import iter_jsonl, rotate_jsonl
from pipeline_tuner.memory.evolution import evolve_memory
from pipeline_tuner.outcomes import OutcomeLog, load_outcomes
from pipeline_tuner.report import run_report
from pipeline_tuner.schemas import (
    ComplexityBuckets,
    IterationModel,
    PredictionValidation,
    TemplateWeightModel,
)
from pipeline_tuner.tuning.audit import adjust_audit_intensity
from pipeline_tuner.tuning.iterations import (
    apply_prediction_bias,
    build_iteration_model,
    complexity_pairs,
    derive_boundaries,
)
from pipeline_tuner.tuning.risk import learn_risk_keywords
from pipeline_tuner.tuning.routing import route_models
from pipeline_tuner.tuning.templates import tune_template_weights

logger = logging.getLogger(__name__)

STEP_OK = "ok"
STEP_SKIPPED = "skipped"
STEP_FAILED = "failed"


@dataclass
class TuningSummary:
    """Per-step status of one pass plus the rendered report."""

    steps: dict[str, str] = field(default_factory=dict)
    report: str = ""

    @property
    def failed_steps(self) -> list[str]:
        return [name for name, status in self.steps.items() if status == STEP_FAILED]

    @property
    def ok(self) -> bool:
        return not self.failed_steps


def current_buckets(settings: TunerSettings) -> ComplexityBuckets:
    """Persisted boundaries, or the configured defaults when none exist yet."""
    if settings.complexity_clusters_path.is_file():
        return ComplexityBuckets.load(settings.complexity_clusters_path)
    try:
        return ComplexityBuckets(
            low_max=settings.iterations.default_low_max,
            med_max=settings.iterations.default_med_max,
        )
    except ValidationError:
        logger.warning("Configured default boundaries are invalid; using 3/6")
        return ComplexityBuckets()


def load_validations(settings: TunerSettings) -> list[PredictionValidation]:
    rows: list[PredictionValidation] = []
    for row in iter_jsonl(settings.validation_log_path):
        try:
            rows.append(PredictionValidation.model_validate(row))
        except ValidationError:
            logger.debug("Skip invalid prediction-validation row: %s", row)
    return rows


class TuningPass:
    """Runs the learners against one snapshot of the outcome log."""

    def __init__(
        self,
        settings: TunerSettings,
        events: EventLog | None = None,
        *,
        now: datetime | None = None,
    ) -> None:
        self.settings = settings
        self.events = events or EventLog(settings.events_path)
        self.now = now
        self.summary = TuningSummary()
        self._log: OutcomeLog | None = None

    @property
    def outcomes(self) -> OutcomeLog:
        if self._log is None:
            self._log = load_outcomes(
                self.settings.outcomes_path,
                default_model=self.settings.routing.expensive_model,
            )
        return self._log

    def _needs_outcomes(self) -> bool:
        if self.settings.outcomes_path.is_file():
            return True
        logger.warning("No outcomes data at %s; model unchanged", self.settings.outcomes_path)
        return False

    def run_step(self, name: str, step: Callable[[], bool | None]) -> None:
        try:
            ran = step()
        except Exception:
            logger.warning("Tuning step %s failed; continuing", name, exc_info=True)
            self.summary.steps[name] = STEP_FAILED
            return
        self.summary.steps[name] = STEP_SKIPPED if ran is False else STEP_OK

    # -- steps --

    def tune_templates(self) -> bool:
        if not self._needs_outcomes():
            return False
        path = self.settings.template_weights_path
        result = tune_template_weights(
            self.outcomes.records,
            TemplateWeightModel.load(path),
            self.settings.templates,
        )
        result.model.save(path)
        self.events.emit(
            "optimize.template_tuned",
            pairs=len(result.pairs),
            updated=len(result.updated_pairs),
            avg_rate=result.avg_rate,
        )
        logger.info("Template weights tuned (%d pairs, avg rate %.2f%%)", len(result.pairs), result.avg_rate)
        return True

    def update_clusters(self) -> bool:
        if not self._needs_outcomes():
            return False
        cfg = self.settings.iterations
        pairs = complexity_pairs(self.outcomes.records)
        updated = derive_boundaries(pairs, current_buckets(self.settings), min_samples=cfg.min_cluster_samples)
        if updated is None:
            logger.debug("Only %d complexity samples; boundaries unchanged", len(pairs))
            return False
        updated.save(self.settings.complexity_clusters_path)
        self.events.emit(
            "optimize.clusters_updated",
            low_max=updated.low_max,
            med_max=updated.med_max,
            samples=updated.samples,
        )
        return True

    def predict_iterations(self) -> bool:
        if not self._needs_outcomes():
            return False
        model = build_iteration_model(
            self.outcomes.records,
            current_buckets(self.settings),
            self.settings.iterations,
        )
        model.save(self.settings.iteration_model_path)
        logger.info(
            "Iteration model: low=%d medium=%d high=%d",
            model.low.max_iterations,
            model.medium.max_iterations,
            model.high.max_iterations,
        )
        return True

    def correct_prediction_bias(self) -> bool:
        path = self.settings.validation_log_path
        if not path.is_file():
            return False
        result = apply_prediction_bias(
            IterationModel.load(self.settings.iteration_model_path),
            load_validations(self.settings),
            current_buckets(self.settings),
            self.settings.iterations,
        )
        if result.changed:
            result.model.save(self.settings.iteration_model_path)
            for adj in result.adjustments:
                self.events.emit(
                    "optimize.prediction_bias_corrected",
                    tier=adj.tier.value,
                    mean_delta=round(adj.mean_delta, 2),
                    correction=adj.correction,
                    samples=adj.samples,
                )
        dropped = rotate_jsonl(path, self.settings.validation_log_max_lines)
        if dropped:
            logger.debug("Rotated %d prediction-validation rows", dropped)
        return True

    def route_models(self) -> bool:
        if not self._needs_outcomes():
            return False
        routing = self.settings.routing
        result = route_models(self.outcomes.records, routing)
        result.table.save(self.settings.model_routing_path)
        for stage in result.switched_to_cheap:
            decision = result.table.routes[stage]
            self.events.emit(
                "optimize.model_switched",
                stage=stage,
                model=routing.cheap_model,
                previous=routing.expensive_model,
                success_rate=decision.success_rate_per_model.get(routing.cheap_model, 0.0),
            )
        return True

    def learn_risk(self) -> bool:
        if not self._needs_outcomes():
            return False
        result = learn_risk_keywords(self.outcomes.records, self.settings.risk)
        if not result.changed:
            logger.debug("No labelled pass/fail outcomes; risk keywords unchanged")
            return False
        result.table.save(self.settings.risk_keywords_path)
        logger.info("Risk keywords learned (%d keywords)", len(result.table.weights))
        return True

    def evolve_memory(self) -> None:
        evolve_memory(self.settings, self.events, now=self.now)

    def report(self) -> None:
        text = run_report(self.settings, self.events, now=self.now)
        self.summary.report = text
        archive = self.settings.report_archive_path
        archive.parent.mkdir(parents=True, exist_ok=True)
        with archive.open("a", encoding="utf-8") as fh:
            fh.write(text)

    def adjust_audit(self) -> bool:
        return adjust_audit_intensity(self.settings, self.events) is not None

    def run(self) -> TuningSummary:
        self.run_step("templates", self.tune_templates)
        self.run_step("clusters", self.update_clusters)
        self.run_step("iterations", self.predict_iterations)
        self.run_step("prediction_bias", self.correct_prediction_bias)
        self.run_step("routing", self.route_models)
        self.run_step("risk", self.learn_risk)
        self.run_step("memory", self.evolve_memory)
        self.run_step("report", self.report)
        self.run_step("audit", self.adjust_audit)
        if self.summary.failed_steps:
            logger.warning("Tuning pass finished with failed steps: %s", ", ".join(self.summary.failed_steps))
        else:
            logger.info("Tuning pass complete")
        return self.summary


def run_tuning_pass(
    settings: TunerSettings,
    events: EventLog | None = None,
    *,
    now: datetime | None = None,
) -> TuningSummary:
    """Run every tuning step in order; a failing step never stops the rest."""
    return TuningPass(settings, events, now=now).run()
