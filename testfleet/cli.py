"""CLI entry point for the parallel test runner."""

import argparse
import asyncio
import json
import logging
import secrets
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from testfleet.config import RunnerSettings
from testfleet.console import Console
from testfleet.governor import MemoryLimitExceededError
from testfleet.planning import (
    MissingTestFilesError,
    RunPlan,
    load_run_plan,
    plan_tasks,
)
from testfleet.report import TestRunFailedError, conclude, write_json_report
from testfleet.scheduler import TestScheduler
from testfleet.workers.loading import load_launcher_manifest

EXIT_PASS = 0
EXIT_FAIL = 1
EXIT_ABORTED = 2


async def run(
    test_ids: Sequence[str],
    root: Path,
    settings: RunnerSettings,
    *,
    plan: RunPlan | None = None,
    launcher_config_json: str = "{}",
    json_report: Path | None = None,
    verbose: bool = False,
    console: Console | None = None,
) -> int:
    """Run the selected tests and return the exit code."""
    log = logging.getLogger("testfleet")
    console = console or Console()
    plan = plan or RunPlan()

    selected = list(test_ids) or list(plan.tests)
    if not selected:
        console.write("No tests selected. Exiting.\n")
        return EXIT_PASS

    try:
        tasks = plan_tasks(
            selected,
            root,
            node_pinned=plan.node_pinned,
            front_loaded=plan.front_loaded,
            pinned_when_memory_limited=plan.pinned_when_memory_limited,
            memory_limited=settings.max_rss is not None,
        )
    except MissingTestFilesError as exc:
        log.error("%s", exc)
        return EXIT_ABORTED

    seed = settings.seed if settings.seed is not None else secrets.randbits(64)
    settings = settings.model_copy(
        update={
            "shared_state_tests": [
                *settings.shared_state_tests,
                *plan.shared_state_tests,
            ]
        }
    )

    log.info("Loading launcher: %s", settings.launcher)
    manifest = load_launcher_manifest(settings.launcher)
    config_dict = json.loads(launcher_config_json)
    config = manifest.config_cls(**config_dict)

    log.info("Running %d test(s) with seed 0x%x", len(tasks), seed)
    async with manifest.launcher_factory(config) as launcher:
        scheduler = TestScheduler(
            launcher=launcher, settings=settings, seed=seed, console=console
        )
        try:
            summary = await scheduler.run(tasks)
        except MemoryLimitExceededError as exc:
            log.error("%s", exc)
            return EXIT_ABORTED

    if json_report is not None:
        write_json_report(summary, json_report)

    try:
        conclude(summary, console, verbose=verbose)
    except TestRunFailedError as exc:
        log.info("%s", exc)
        return EXIT_FAIL
    return EXIT_PASS


def settings_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Settings given on the command line; they win over the environment."""
    overrides: dict[str, Any] = {
        name: value
        for name, value in (
            ("jobs", args.jobs),
            ("max_rss_mb", args.max_rss_mb),
            ("seed", args.seed),
            ("launcher", args.launcher),
        )
        if value is not None
    }
    if args.exit_on_error:
        overrides["exit_on_error"] = True
    if args.use_multiple_workers:
        overrides["use_multiple_workers"] = True
    return overrides


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Run test suites in parallel across worker processes"
    )
    parser.add_argument(
        "tests",
        nargs="*",
        help="Test ids relative to --root (e.g. 'core/arith' for core/arith.py)",
    )
    parser.add_argument(
        "--root",
        type=Path,
        default=Path.cwd(),
        help="Directory that test ids are relative to",
    )
    parser.add_argument(
        "--plan",
        type=Path,
        help="YAML run plan with test ids, pinned and front-loaded tests",
    )
    parser.add_argument("--jobs", type=int, help="Override the CPU count")
    parser.add_argument(
        "--max-rss-mb",
        type=int,
        help="Recycle a worker once its resident memory exceeds this many MB",
    )
    parser.add_argument(
        "--seed",
        type=lambda value: int(value, 0),
        help="Seed for the random module in every suite (decimal or 0x hex)",
    )
    parser.add_argument(
        "--exit-on-error",
        action="store_true",
        help="Stop taking new tests after the first crash",
    )
    parser.add_argument(
        "--use-multiple-workers",
        action="store_true",
        help="Use several workers even when loopback networking is unavailable",
    )
    parser.add_argument("--launcher", help="Worker launcher key (default: process)")
    parser.add_argument(
        "--launcher-config",
        default="{}",
        help="JSON configuration for the launcher",
    )
    parser.add_argument(
        "--json-report",
        type=Path,
        help="Write the merged report as JSON to this path",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Log debug output"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    plan = load_run_plan(args.plan) if args.plan else None
    exit_code = asyncio.run(
        run(
            test_ids=args.tests,
            root=args.root,
            settings=RunnerSettings(**settings_overrides(args)),
            plan=plan,
            launcher_config_json=args.launcher_config,
            json_report=args.json_report,
            verbose=args.verbose,
        )
    )
    sys.exit(exit_code)


if __name__ == "__main__":  # pragma: no cover
    main()
