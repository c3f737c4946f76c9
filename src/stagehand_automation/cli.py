from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

from .config import DEFAULT_CONFIG, load_config
from .engine import ConvergenceEngine
from .errors import ConfigurationError, ConnectivityError
from .inventory import ManifestLoader
from .planner import ConvergencePlan
from .types import Action, ExecutionReport, Outcome, ReportEntry

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_NO_NETWORK = 2


class Ansi:
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    ORANGE = "\033[38;5;208m"
    RESET = "\033[0m"


def colorize(text: str, color: Optional[str]) -> str:
    if not color:
        return text
    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        return text
    return f"{color}{text}{Ansi.RESET}"

_last_progress_len = 0

_OUTCOME_STYLE = {
    Outcome.SATISFIED: ("ok", Ansi.BLUE),
    Outcome.APPLIED: ("changed", Ansi.GREEN),
    Outcome.RETRIED: ("changed (retried)", Ansi.GREEN),
    Outcome.FAILED_RECOVERED: ("warning", Ansi.ORANGE),
    Outcome.FAILED_FATAL: ("failed", Ansi.RED),
    Outcome.BLOCKED: ("skipped", Ansi.ORANGE),
}


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Stagehand host convergence")
    parser.add_argument(
        "manifest",
        nargs="?",
        default=None,
        type=Path,
        help="Path to a host manifest (default from config or /etc/stagehand/host.toml)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help=f"Path to stagehand config file (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument("--dry-run", action="store_true", help="Print the plan without changing anything")
    parser.add_argument(
        "--skip-connectivity",
        action="store_true",
        help="Do not require network reachability before converging",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(levelname)s %(name)s - %(message)s",
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        cfg = load_config(args.config)
        manifest = args.manifest or cfg.manifest
        loader = ManifestLoader()
        resources = loader.load(manifest)
        engine = ConvergenceEngine.from_config(cfg, dry_run=args.dry_run, progress_callback=print_progress)
        if not args.skip_connectivity:
            engine.preflight()
        plan = engine.plan(resources)
    except ConnectivityError as exc:
        print(colorize(f"Connectivity check failed: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_NO_NETWORK
    except ConfigurationError as exc:
        print(colorize(f"Manifest validation failed: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_FAILED

    if args.dry_run:
        print(format_plan(plan))
        return EXIT_OK

    try:
        report = engine.converge(resources, check_connectivity=False, plan=plan)
    except Exception as exc:  # noqa: BLE001
        _clear_progress()
        if logging.getLogger().isEnabledFor(logging.DEBUG):
            raise
        print(colorize(f"Execution failed: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_FAILED

    _clear_progress()
    effective_level = logging.getLogger().getEffectiveLevel()
    for entry in report.entries:
        if should_display_entry(entry, effective_level):
            print(format_entry(entry))
    summary = Summary(report, notes=loader.notes)
    print(summary.render())
    follow_ups = summary.render_follow_ups()
    if follow_ups:
        print(follow_ups)
    return EXIT_OK if report.ok else EXIT_FAILED


def format_entry(entry: ReportEntry) -> str:
    status, color = _OUTCOME_STYLE[entry.outcome]
    operation = entry.operation.value if entry.operation else "Inspect"
    line = f"{entry.resource_id}::{operation} {status}"
    if entry.detail:
        line = f"{line} - {entry.detail}"
    return colorize(line, color)


def format_plan(plan: ConvergencePlan) -> str:
    lines = [colorize(f"{obs.resource_id} ok - {obs.detail}", Ansi.BLUE) for obs in plan.satisfied]
    for action in plan.actions:
        lines.append(colorize(f"{action.resource_id}::{action.describe()} would run", Ansi.YELLOW))
    for warning in plan.warnings:
        lines.append(colorize(f"warning: {warning}", Ansi.ORANGE))
    if plan.empty:
        lines.append(colorize("Host already matches the manifest", Ansi.GREEN))
    lines.append(f"Planned actions: {len(plan.actions)} | Satisfied: {len(plan.satisfied)}")
    return "\n".join(lines)


def should_display_entry(entry: ReportEntry, log_level: int) -> bool:
    if entry.outcome is not Outcome.SATISFIED:
        return True
    return log_level <= logging.INFO


def print_progress(action: Action) -> None:
    global _last_progress_len
    _clear_progress()
    line = f"{action.resource_id}::{action.describe()} pending..."
    _last_progress_len = len(line)
    print(colorize(line, Ansi.YELLOW), end="\r", flush=True)


def _clear_progress() -> None:
    global _last_progress_len
    if _last_progress_len:
        print(" " * _last_progress_len, end="\r", flush=True)
        _last_progress_len = 0


class Summary:
    def __init__(self, report: ExecutionReport, notes: Sequence[str] = ()) -> None:
        self.report = report
        self.notes = list(notes)
        self.satisfied = 0
        self.applied = 0
        self.warnings = len(report.warnings)
        self.failures = len(report.not_attempted)
        for entry in report.entries:
            if entry.outcome is Outcome.SATISFIED:
                self.satisfied += 1
            elif entry.outcome in (Outcome.APPLIED, Outcome.RETRIED):
                self.applied += 1
            elif entry.outcome is Outcome.FAILED_RECOVERED:
                self.warnings += 1
            else:
                self.failures += 1

    def render(self) -> str:
        parts = [
            f"Satisfied: {self.satisfied}",
            f"Applied: {self.applied}",
            f"Warnings: {self.warnings}",
            f"Failures: {self.failures}",
        ]
        if self.report.aborted:
            parts.append("Aborted")
        text = " | ".join(parts)
        if self.failures:
            color = Ansi.RED
        elif self.warnings:
            color = Ansi.ORANGE
        else:
            color = Ansi.GREEN
        return colorize(text, color)

    def render_follow_ups(self) -> str:
        lines: list[str] = []
        converged = self.report.converged_resources()
        if converged:
            lines.append(colorize(f"Converged: {', '.join(converged)}", Ansi.GREEN))
        items = self.report.follow_ups()
        if items:
            attention = ["Needs attention:", *(f"  - {item}" for item in items)]
            lines.append(colorize("\n".join(attention), Ansi.ORANGE))
        if self.notes:
            manual = ["Manual steps:", *(f"  - {note}" for note in self.notes)]
            lines.append(colorize("\n".join(manual), Ansi.YELLOW))
        return "\n".join(lines)


if __name__ == "__main__":
    raise SystemExit(main())
