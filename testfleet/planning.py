"""Turn a list of test ids into ordered, partitioned tasks."""

import logging
from collections.abc import Iterable, Sequence
from pathlib import Path

import yaml
from pydantic import Field

from testfleet.models.base import Model
from testfleet.models.task import TestTask

log = logging.getLogger(__name__)

SUITE_SUFFIX = ".py"


class MissingTestFilesError(Exception):
    """Raised when test ids do not resolve to suite files."""

    def __init__(self, missing: Sequence[str]) -> None:
        self.missing = tuple(missing)
        super().__init__(
            "Did not find test files for the following tests: " + ", ".join(missing)
        )


class RunPlan(Model):
    """Which tests to run and how to order them, loaded from a plan file."""

    tests: Sequence[str] = Field(default_factory=tuple, description="Test ids in order")
    node_pinned: Sequence[str] = Field(
        default_factory=tuple,
        description="Tests that must run on the controller, in this order",
    )
    front_loaded: Sequence[str] = Field(
        default_factory=tuple,
        description="Substrings of slow tests to start first",
    )
    pinned_when_memory_limited: Sequence[str] = Field(
        default_factory=tuple,
        description="Tests pinned to the controller only when max RSS is set",
    )
    shared_state_tests: Sequence[str] = Field(
        default_factory=tuple,
        description="Pinned tests that run without isolation from the controller",
    )


def load_run_plan(path: Path) -> RunPlan:
    """Load a run plan from a YAML file."""
    data = yaml.safe_load(path.read_text()) or {}
    return RunPlan.model_validate(data)


def resolve_test_path(root: Path, test_id: str) -> Path:
    """Return the suite file for a test id ('dir/name' -> root/dir/name.py)."""
    return root / f"{test_id}{SUITE_SUFFIX}"


def plan_tasks(
    test_ids: Iterable[str],
    root: Path,
    *,
    node_pinned: Sequence[str] = (),
    front_loaded: Sequence[str] = (),
    pinned_when_memory_limited: Sequence[str] = (),
    memory_limited: bool = False,
) -> Sequence[TestTask]:
    """Build the task list: parallel tasks in dispatch order, then pinned ones.

    Args:
        test_ids: Selected test ids; duplicates are dropped
        root: Directory the test ids are relative to
        node_pinned: Ids to run on the controller, in the order given here
        front_loaded: Substrings; matching ids move to the front, one
            prefix after another, so later prefixes end up first
        pinned_when_memory_limited: Extra ids to pin when a memory limit is set
        memory_limited: Whether a maximum worker RSS is configured

    Returns:
        Parallel tasks first, in queue order, followed by pinned tasks

    Raises:
        MissingTestFilesError: If any id has no suite file

    """
    tests = list(dict.fromkeys(test_ids))

    missing = [t for t in tests if not resolve_test_path(root, t).is_file()]
    if missing:
        raise MissingTestFilesError(missing)

    pinned: list[str] = []
    pin_order = list(node_pinned)
    if memory_limited:
        pin_order.extend(pinned_when_memory_limited)
    for test_id in pin_order:
        if test_id in tests:
            tests.remove(test_id)
            pinned.append(test_id)

    for prefix in front_loaded:
        matching = [t for t in tests if prefix in t]
        tests = matching + [t for t in tests if prefix not in t]

    log.debug(
        "Planned %d parallel and %d pinned test(s)", len(tests), len(pinned)
    )
    return [
        *(TestTask(id=t, path=resolve_test_path(root, t).resolve()) for t in tests),
        *(
            TestTask(id=t, path=resolve_test_path(root, t).resolve(), is_node_pinned=True)
            for t in pinned
        ),
    ]
