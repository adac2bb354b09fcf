"""Run one suite file with pytest and describe what happened."""

import gc
import logging
import random
import resource
import sys
import time
import tracemalloc
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from testfleet.models.outcome import (
    FailureDetail,
    OpaqueCrash,
    Outcome,
    PassOutcome,
    StructuredFailure,
)
from testfleet.models.protocol import ExecuteRequest, ExecuteResponse

log = logging.getLogger(__name__)

PYTEST_ARGS = (
    "-q",
    "--no-header",
    "-p",
    "no:cacheprovider",
    "--import-mode=importlib",
)

CRASH_EXIT_CODES = frozenset({pytest.ExitCode.INTERNAL_ERROR, pytest.ExitCode.USAGE_ERROR})


@dataclass(kw_only=True)
class OutcomeCollector:
    """pytest plugin that tallies reports into pass/broken/failure counts.

    Skipped and xfailed tests count as broken. Failures keep the order in
    which pytest reported them.
    """

    pass_count: int = 0
    broken_count: int = 0
    failures: list[FailureDetail] = field(default_factory=list)

    def pytest_collectreport(self, report: pytest.CollectReport) -> None:
        """Record modules that failed to import or collect."""
        if report.failed:
            self.failures.append(
                FailureDetail(
                    kind="error", test=report.nodeid, message=report.longreprtext
                )
            )

    def pytest_runtest_logreport(self, report: pytest.TestReport) -> None:
        """Tally one setup/call/teardown report."""
        if report.failed:
            kind = "fail" if report.when == "call" else "error"
            self.failures.append(
                FailureDetail(kind=kind, test=report.nodeid, message=report.longreprtext)
            )
        elif report.skipped:
            self.broken_count += 1
        elif report.when == "call":
            self.pass_count += 1

    def outcome(self) -> Outcome:
        """Summarise the collected reports."""
        if self.failures:
            return StructuredFailure(
                pass_count=self.pass_count,
                broken_count=self.broken_count,
                failures=tuple(self.failures),
            )
        return PassOutcome(pass_count=self.pass_count, broken_count=self.broken_count)


@dataclass(kw_only=True)
class _Measurement:
    duration: float = 0.0
    gc_time: float = 0.0
    peak_rss: int = 0
    bytes_allocated: int = 0


def peak_rss() -> int:
    """Highest resident set size this process has reached, in bytes."""
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is in kilobytes, except on macOS
    return peak if sys.platform == "darwin" else peak * 1024


@contextmanager
def _measure() -> Iterator[_Measurement]:
    measurement = _Measurement()
    gc_started: list[float] = []

    def on_gc(phase: str, info: dict[str, Any]) -> None:
        if phase == "start":
            gc_started.append(time.perf_counter())
        elif gc_started:
            measurement.gc_time += time.perf_counter() - gc_started.pop()

    if tracemalloc.is_tracing():
        tracemalloc.reset_peak()
    gc.callbacks.append(on_gc)
    started = time.perf_counter()
    try:
        yield measurement
    finally:
        measurement.duration = time.perf_counter() - started
        gc.callbacks.remove(on_gc)
        measurement.peak_rss = peak_rss()
        if tracemalloc.is_tracing():
            measurement.bytes_allocated = tracemalloc.get_traced_memory()[1]


def _defined_under(module: object, root: Path) -> bool:
    filename = getattr(module, "__file__", None)
    return filename is not None and Path(filename).resolve().is_relative_to(root)


@contextmanager
def isolated_imports(root: Path) -> Iterator[None]:
    """Forget modules from ``root`` and path entries a suite adds while it runs.

    Only modules whose source lives under ``root`` are dropped; pytest and
    library modules imported on first use stay loaded.
    """
    root = root.resolve()
    modules_before = set(sys.modules)
    path_before = list(sys.path)
    try:
        yield
    finally:
        for name in set(sys.modules) - modules_before:
            if _defined_under(sys.modules.get(name), root):
                del sys.modules[name]
        sys.path[:] = path_before


def run_pytest(path: Path) -> Outcome:
    """Run one suite file through pytest and summarise the result.

    A module that fails to import stops pytest with INTERRUPTED; the
    collection error is already recorded, so that still yields a
    structured result.
    """
    collector = OutcomeCollector()
    exit_code = pytest.main([*PYTEST_ARGS, str(path)], plugins=[collector])
    if exit_code in CRASH_EXIT_CODES:
        return OpaqueCrash(info=f"pytest exited with {exit_code!r} running {path}")
    if exit_code == pytest.ExitCode.INTERRUPTED and not collector.failures:
        return OpaqueCrash(info=f"pytest was interrupted running {path}")
    return collector.outcome()


def run_suite(
    request: ExecuteRequest, *, generation: int = 0, isolate: bool = False
) -> ExecuteResponse:
    """Run the requested suite in this process.

    Args:
        request: Suite to run and the seed for the global RNG
        generation: Generation of the worker answering the request
        isolate: Undo module imports and ``sys.path`` changes afterwards

    Returns:
        The outcome together with resource usage figures

    """
    random.seed(request.seed)
    log.debug("Running %s from %s", request.test_id, request.path)

    path = Path(request.path)
    with _measure() as measurement:
        if isolate:
            with isolated_imports(path.parent):
                outcome = run_pytest(path)
        else:
            outcome = run_pytest(path)

    return ExecuteResponse(
        test_id=request.test_id,
        generation=generation,
        outcome=outcome,
        duration=measurement.duration,
        peak_rss=measurement.peak_rss,
        gc_time=measurement.gc_time,
        bytes_allocated=measurement.bytes_allocated,
    )
