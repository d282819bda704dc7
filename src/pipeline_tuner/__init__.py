"""Pipeline Tuner - learn from completed agent pipelines and steer the next ones."""

from importlib.metadata import PackageNotFoundError, version

from pipeline_tuner.schemas import IterationModel, ModelRoutingTable, OutcomeRecord, TemplateWeightModel

__all__ = ["IterationModel", "ModelRoutingTable", "OutcomeRecord", "TemplateWeightModel"]

try:
    __version__ = version("pipeline-tuner")
except PackageNotFoundError:
    __version__ = "0.0.0"
