"""Best-effort GitHub Actions health snapshot via the ``gh`` CLI."""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pipeline_tuner.schemas import parse_utc_iso

logger = logging.getLogger(__name__)

_RUN_FIELDS = "conclusion,createdAt,updatedAt"


@dataclass(frozen=True, slots=True)
class CIMetrics:
    """Aggregate over the most recent workflow runs."""

    success_rate: int = 0
    avg_duration_s: int = 0

    @property
    def has_data(self) -> bool:
        return self.success_rate > 0 or self.avg_duration_s > 0


def _github_disabled() -> bool:
    return os.getenv("NO_GITHUB", "").strip().lower() in {"1", "true", "yes"}


def _run_duration_seconds(run: dict[str, Any]) -> float:
    started = parse_utc_iso(run.get("createdAt"))
    finished = parse_utc_iso(run.get("updatedAt"))
    if started is None or finished is None:
        return 0.0
    return max(0.0, (finished - started).total_seconds())


def summarize_runs(runs: Sequence[dict[str, Any]]) -> CIMetrics:
    """Success percentage and mean duration, both floored to integers."""
    valid = [run for run in runs if isinstance(run, dict)]
    if not valid:
        return CIMetrics()
    successes = sum(1 for run in valid if run.get("conclusion") == "success")
    rate = int(successes / max(len(valid), 1) * 100)
    avg = int(sum(_run_duration_seconds(run) for run in valid) / len(valid))
    return CIMetrics(success_rate=rate, avg_duration_s=avg)


def fetch_ci_metrics(
    *,
    timeout: int = 15,
    cwd: Path | None = None,
    limit: int = 50,
) -> CIMetrics | None:
    """Return CI metrics for the repository at ``cwd`` or ``None`` when unavailable.

    Never raises: a missing ``gh`` binary, a timeout, a non-zero exit or
    unparseable output all degrade to ``None``.
    """
    if _github_disabled():
        return None
    gh = shutil.which("gh")
    if gh is None:
        logger.debug("gh CLI not found; skipping CI metrics")
        return None
    cmd = [gh, "run", "list", "--limit", str(limit), "--json", _RUN_FIELDS]
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("gh run list failed: %s", exc)
        return None
    if result.returncode != 0:
        logger.debug("gh run list exited %d: %s", result.returncode, result.stderr.strip())
        return None
    try:
        runs = json.loads(result.stdout or "[]")
    except json.JSONDecodeError as exc:
        logger.debug("Unparseable gh output: %s", exc)
        return None
    if not isinstance(runs, list):
        return None
    return summarize_runs(runs)
