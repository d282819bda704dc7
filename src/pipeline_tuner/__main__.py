"""CLI entrypoint for pipeline-tuner."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import NoReturn

from dotenv import load_dotenv

from pipeline_tuner.config import TunerSettings, load_settings
from pipeline_tuner.errors import StateFileError
from pipeline_tuner.events import EventLog


def _load_dotenv() -> None:
    """Load .env from cwd, its parent, or package root so it's found regardless of cwd."""
    # src/pipeline_tuner/__main__.py -> repository root
    _package_root = Path(__file__).resolve().parent.parent.parent
    for dir_ in (Path.cwd(), Path.cwd().parent, _package_root):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return
    load_dotenv()


_load_dotenv()


class _ArgumentParser(argparse.ArgumentParser):
    """Parser whose usage errors exit with status 1 instead of argparse's 2."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser for all supported commands."""
    p = _ArgumentParser(
        prog="pipeline-tuner",
        description="pipeline-tuner - learn from pipeline outcomes and tune future runs.",
    )
    p.add_argument(
        "--home",
        type=str,
        default="",
        help="State directory (default: $PIPELINE_TUNER_HOME or ~/.pipeline_tuner).",
    )
    p.add_argument(
        "--config",
        type=str,
        default="",
        help="Extra YAML settings file layered over <home>/tuning.yaml.",
    )
    p.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging.",
    )
    # -- Sub-commands ---------------------------------------------------------
    sub = p.add_subparsers(dest="command")

    analyze_p = sub.add_parser(
        "analyze-outcome",
        help="Record the outcome of one completed pipeline.",
    )
    analyze_p.add_argument("state_file", help="Path to the pipeline state file.")

    sub.add_parser("tune", help="Run the full tuning pass and print the report.")
    sub.add_parser("report", help="Print the rolling outcome and model report.")
    sub.add_parser("evolve-memory", help="Prune, strengthen and promote failure memory.")

    capture_p = sub.add_parser(
        "capture-failure",
        help="Record a failure pattern; the error text is read from stdin.",
    )
    capture_p.add_argument("--repo", required=True, help="Repository key for the failure store.")
    capture_p.add_argument("--stage", default="unknown", help="Pipeline stage that failed.")
    return p


def _settings_from_args(args: argparse.Namespace) -> TunerSettings:
    home = Path(args.home).expanduser() if args.home else None
    config = Path(args.config).expanduser() if args.config else None
    return load_settings(config, home=home)


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the requested command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    # -- Logging setup ---------------------------------------------------------
    level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    if not args.command:
        parser.print_help()
        print(
            "\nTip: run 'pipeline-tuner analyze-outcome <state-file>' after each pipeline,\n"
            "     and 'pipeline-tuner tune' from a daily scheduler.",
            file=sys.stderr,
        )
        return 1

    settings = _settings_from_args(args)
    if args.command == "analyze-outcome":
        return _analyze_outcome(settings, Path(args.state_file))
    if args.command == "tune":
        return _tune(settings)
    if args.command == "report":
        return _report(settings)
    if args.command == "evolve-memory":
        return _evolve_memory(settings)
    if args.command == "capture-failure":
        return _capture_failure(settings, args.repo, args.stage)

    parser.print_help()
    return 1


# -- Commands ----------------------------------------------------------------


def _analyze_outcome(settings: TunerSettings, state_file: Path) -> int:
    from pipeline_tuner.outcomes import record_outcome

    try:
        record = record_outcome(state_file, settings)
    except StateFileError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"Error: could not record outcome in {settings.outcomes_path}: {exc}", file=sys.stderr)
        return 1
    print(
        f"Outcome recorded: issue #{record.issue_id}, template={record.template}, "
        f"result={record.result}, iterations={record.iterations}, cost=${record.cost:.2f}"
    )
    return 0


def _tune(settings: TunerSettings) -> int:
    from pipeline_tuner.orchestrator import run_tuning_pass

    summary = run_tuning_pass(settings)
    print(summary.report, end="")
    return 0


def _report(settings: TunerSettings) -> int:
    from pipeline_tuner.report import run_report

    print(run_report(settings), end="")
    return 0


def _evolve_memory(settings: TunerSettings) -> int:
    from pipeline_tuner.memory.evolution import evolve_memory

    result = evolve_memory(settings)
    print(f"Memory evolved: pruned={result.pruned}, strengthened={result.strengthened}, promoted={result.promoted}")
    return 0


def _capture_failure(settings: TunerSettings, repo: str, stage: str) -> int:
    from pipeline_tuner.memory.store import capture_failure

    entry = capture_failure(
        settings.memory_root,
        repo,
        stage,
        sys.stdin.read(),
        events=EventLog(settings.events_path),
        max_entries=settings.memory.max_failures_per_repo,
    )
    if entry is None:
        print("No failure pattern found in input.", file=sys.stderr)
        return 0
    print(f"Failure captured ({entry.seen_count}x): {entry.pattern}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
