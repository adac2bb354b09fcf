"""Merge recorded results into one report tree and a final verdict."""

import json
import logging
from collections.abc import Collection, Iterator, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal

from testfleet.console import Console
from testfleet.models.outcome import (
    FailureDetail,
    OpaqueCrash,
    PassOutcome,
    StructuredFailure,
)
from testfleet.models.result import ResultEntry
from testfleet.models.task import TestTask

log = logging.getLogger(__name__)

type EventKind = Literal["pass", "broken", "fail", "error"]
type UnfinishedTag = Literal["interrupted", "skipped"]

UNFINISHED_MESSAGES: dict[UnfinishedTag, str] = {
    "interrupted": "Test was interrupted before it finished",
    "skipped": "Test was skipped after an earlier failure",
}


class Verdict(StrEnum):
    """Final result of a run."""

    PASS = "pass"
    FAIL = "fail"


class TestRunFailedError(Exception):
    """Raised after the failure banner when the verdict is FAIL."""

    __test__ = False

    def __init__(self, summary: "RunSummary") -> None:
        self.summary = summary
        tally = summary.root.tally()
        super().__init__(
            f"Test run finished with {tally.failed} failure(s), "
            f"{tally.errored} error(s), {tally.interrupted} interrupted and "
            f"{tally.skipped} skipped suite(s)"
        )


@dataclass(frozen=True, kw_only=True)
class ReportEvent:
    """One replayed result inside a suite node."""

    kind: EventKind
    test: str | None = None
    message: str = ""


@dataclass(frozen=True, kw_only=True)
class Tally:
    """Counts per result kind; unfinished suites are kept apart from errors."""

    passed: int = 0
    failed: int = 0
    errored: int = 0
    broken: int = 0
    interrupted: int = 0
    skipped: int = 0

    def __add__(self, other: "Tally") -> "Tally":
        return Tally(
            passed=self.passed + other.passed,
            failed=self.failed + other.failed,
            errored=self.errored + other.errored,
            broken=self.broken + other.broken,
            interrupted=self.interrupted + other.interrupted,
            skipped=self.skipped + other.skipped,
        )

    @property
    def unfinished(self) -> int:
        """Suites that never produced a result, whatever the reason."""
        return self.interrupted + self.skipped

    @property
    def total(self) -> int:
        """Number of counted results of any kind."""
        return (
            self.passed + self.failed + self.errored + self.broken + self.unfinished
        )


@dataclass(kw_only=True)
class ReportNode:
    """A named node of the report tree.

    Leaves built from a passing suite only carry ``pass_count`` and
    ``broken_count``; everything else is expressed as ordered ``events``.
    """

    name: str
    duration: float = 0.0
    pass_count: int = 0
    broken_count: int = 0
    events: list[ReportEvent] = field(default_factory=list)
    children: list["ReportNode"] = field(default_factory=list)
    tag: UnfinishedTag | None = None

    def own_tally(self) -> Tally:
        """Counts for this node, ignoring its children."""
        if self.tag == "skipped":
            return Tally(skipped=1)
        if self.tag == "interrupted":
            return Tally(interrupted=1)
        kinds = [event.kind for event in self.events]
        return Tally(
            passed=self.pass_count + kinds.count("pass"),
            failed=kinds.count("fail"),
            errored=kinds.count("error"),
            broken=self.broken_count + kinds.count("broken"),
        )

    def tally(self) -> Tally:
        """Counts for this node and everything below it."""
        total = self.own_tally()
        for child in self.children:
            total += child.tally()
        return total

    @property
    def passing(self) -> bool:
        """Whether this node and all its children passed."""
        tally = self.own_tally()
        if tally.failed or tally.errored or tally.unfinished:
            return False
        return all(child.passing for child in self.children)

    def failures(self) -> Iterator[tuple["ReportNode", ReportEvent]]:
        """Every failing event under this node, depth first."""
        for event in self.events:
            if event.kind in ("fail", "error"):
                yield self, event
        for child in self.children:
            yield from child.failures()


@dataclass(kw_only=True)
class RunSummary:
    """Root of the merged report."""

    root: ReportNode
    seed: int
    skipped_count: int = 0

    @property
    def verdict(self) -> Verdict:
        """PASS iff every node in the tree is fully passing."""
        return Verdict.PASS if self.root.passing else Verdict.FAIL

    @property
    def interrupted_count(self) -> int:
        """Suites that never produced a result."""
        return self.root.tally().interrupted


def _failure_event(detail: FailureDetail) -> ReportEvent:
    return ReportEvent(kind=detail.kind, test=detail.test, message=detail.message)


@dataclass(frozen=True, kw_only=True)
class ReportAggregator:
    """Builds the report tree from the result log and the planned tasks."""

    seed: int
    root_name: str = "Overall"

    def node_for(self, entry: ResultEntry) -> ReportNode:
        """Translate one recorded outcome into a report node."""
        match entry.outcome:
            case PassOutcome(pass_count=passed, broken_count=broken):
                return ReportNode(
                    name=entry.test_id,
                    duration=entry.duration,
                    pass_count=passed,
                    broken_count=broken,
                )
            case StructuredFailure(
                pass_count=passed, broken_count=broken, failures=failures
            ):
                events = (
                    [ReportEvent(kind="pass")] * passed
                    + [ReportEvent(kind="broken")] * broken
                    + [_failure_event(detail) for detail in failures]
                )
                return ReportNode(
                    name=entry.test_id, duration=entry.duration, events=events
                )
            case OpaqueCrash(info=info):
                return ReportNode(
                    name=entry.test_id,
                    duration=entry.duration,
                    events=[ReportEvent(kind="error", test=entry.test_id, message=info)],
                )
            case _:  # pragma: no cover
                raise TypeError(f"Unknown outcome: {entry.outcome!r}")

    def unfinished_node(self, task: TestTask, tag: UnfinishedTag) -> ReportNode:
        """Synthetic node for a task that never produced a result."""
        return ReportNode(
            name=task.id,
            events=[
                ReportEvent(kind="error", test=task.id, message=UNFINISHED_MESSAGES[tag])
            ],
            tag=tag,
        )

    def aggregate(
        self,
        *,
        entries: Sequence[ResultEntry],
        parallel: Sequence[TestTask],
        pinned: Sequence[TestTask],
        skipped_ids: Collection[str] = (),
        skipped_count: int = 0,
        duration: float = 0.0,
    ) -> RunSummary:
        """Merge results into a :class:`RunSummary`.

        Pool results come first in completion order, then pool tasks that
        never finished in queue order, then pinned tasks in pinning order.

        Args:
            entries: Recorded results in completion order
            parallel: Tasks that were meant for the pool, in queue order
            pinned: Tasks that were meant for the controller, in pinning order
            skipped_ids: Tasks discarded by exit-on-first-error
            skipped_count: Number of tasks discarded by exit-on-first-error
            duration: Wall time of the whole run

        Returns:
            The merged report

        """
        by_id = {entry.test_id: entry for entry in entries}
        pinned_ids = {task.id for task in pinned}
        root = ReportNode(name=self.root_name, duration=duration)

        for entry in entries:
            if entry.test_id not in pinned_ids:
                root.children.append(self.node_for(entry))

        for task in parallel:
            if task.id not in by_id:
                tag: UnfinishedTag = (
                    "skipped" if task.id in skipped_ids else "interrupted"
                )
                root.children.append(self.unfinished_node(task, tag))

        for task in pinned:
            if (entry := by_id.get(task.id)) is not None:
                root.children.append(self.node_for(entry))
            else:
                root.children.append(self.unfinished_node(task, "interrupted"))

        summary = RunSummary(root=root, seed=self.seed, skipped_count=skipped_count)
        log.debug(
            "Aggregated %d suite(s), verdict %s", len(root.children), summary.verdict
        )
        return summary


SUMMARY_TITLE = "Test Summary:"
TABLE_COLUMNS = (
    "Pass",
    "Fail",
    "Error",
    "Broken",
    "Interrupted",
    "Skipped",
    "Total",
    "Time",
)


def render_table(
    summary: RunSummary, console: Console, *, verbose: bool = False
) -> None:
    """Print the per-suite results table.

    Only the root and non-passing suites are listed unless ``verbose``.
    """
    rows = [(summary.root, 0)] + [
        (child, 1)
        for child in summary.root.children
        if verbose or not child.passing
    ]
    width = max(len(SUMMARY_TITLE), *(2 * depth + len(n.name) for n, depth in rows))
    console.write(
        f"{SUMMARY_TITLE.ljust(width)} | {' '.join(TABLE_COLUMNS)}\n", bold=True
    )
    for node, depth in rows:
        tally = node.tally()
        cells = (
            tally.passed,
            tally.failed,
            tally.errored,
            tally.broken,
            tally.interrupted,
            tally.skipped,
            tally.total,
        )
        line = (
            f"{('  ' * depth + node.name).ljust(width)} | "
            + " ".join(
                str(value or "").rjust(len(column))
                for value, column in zip(cells, TABLE_COLUMNS, strict=False)
            )
            + f" {node.duration:.1f}s\n"
        )
        console.write(line, None if node.passing else "red")


def render_failures(summary: RunSummary, console: Console) -> None:
    """Print every failure detail recorded in the tree."""
    for node, event in summary.root.failures():
        label = "Failed" if event.kind == "fail" else "Error"
        console.write(f"\n{node.name}: {label} in {event.test or node.name}\n", "red")
        if event.message:
            console.write(event.message.rstrip("\n") + "\n")


def conclude(summary: RunSummary, console: Console, *, verbose: bool = False) -> None:
    """Print the results table and the final banner.

    Raises:
        TestRunFailedError: If the verdict is FAIL

    """
    console.write("\n")
    render_table(summary, console, verbose=verbose)

    if summary.verdict is Verdict.PASS:
        console.write("    SUCCESS\n", "green", bold=True)
        return

    console.write("    FAILURE\n\n", "red", bold=True)
    if summary.skipped_count:
        noun = "test was" if summary.skipped_count == 1 else "tests were"
        console.write(f"{summary.skipped_count} {noun} skipped due to failure.\n", "red")
    console.write(f"The global RNG seed was 0x{summary.seed:x}.\n\n")
    render_failures(summary, console)
    raise TestRunFailedError(summary)


def _node_status(node: ReportNode) -> str:
    if node.tag is not None:
        return node.tag
    tally = node.own_tally()
    if tally.errored:
        return "error"
    if tally.failed:
        return "failure"
    return "success"


def format_output(summary: RunSummary) -> dict[str, Any]:
    """Format the report for JSON output."""
    results: list[dict[str, Any]] = []
    for node in summary.root.children:
        tally = node.tally()
        results.append(
            {
                "test": node.name,
                "status": _node_status(node),
                "duration": node.duration,
                "passed": tally.passed,
                "failed": tally.failed,
                "errors": tally.errored,
                "broken": tally.broken,
                "failures": [
                    {"kind": event.kind, "test": event.test, "message": event.message}
                    for _, event in node.failures()
                ],
            }
        )

    return {
        "verdict": str(summary.verdict),
        "seed": f"0x{summary.seed:x}",
        "duration": summary.root.duration,
        "total": len(results),
        "passed": sum(1 for r in results if r["status"] == "success"),
        "failed": sum(1 for r in results if r["status"] == "failure"),
        "errors": sum(1 for r in results if r["status"] == "error"),
        "interrupted": sum(1 for r in results if r["status"] == "interrupted"),
        "skipped": summary.skipped_count,
        "results": results,
    }


def write_json_report(summary: RunSummary, path: Path) -> None:
    """Write the report as JSON to ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(format_output(summary), indent=2) + "\n")
    log.info("Wrote JSON report to %s", path)
