"""Per-repository failure memory and its periodic evolution."""

from pipeline_tuner.memory.evolution import EvolutionResult, evolve_memory
from pipeline_tuner.memory.store import capture_failure, extract_pattern, iter_repo_stores

__all__ = ["EvolutionResult", "capture_failure", "evolve_memory", "extract_pattern", "iter_repo_stores"]
