"""Decide what happens to a worker after each outcome."""

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Literal

from testfleet.models.outcome import OpaqueCrash, Outcome

log = logging.getLogger(__name__)

type SoleWorkerCrashPolicy = Literal["reuse", "halt"]


class Action(StrEnum):
    """What the Dispatcher should do before taking its next task."""

    CONTINUE = "continue"
    RECYCLE = "recycle"
    HALT_INTAKE = "halt_intake"
    ABORT = "abort"


class MemoryLimitExceededError(Exception):
    """Raised when the only worker breaches the memory limit."""

    def __init__(self, test_id: str, peak_rss: int, max_rss: int) -> None:
        self.test_id = test_id
        self.peak_rss = peak_rss
        self.max_rss = max_rss
        super().__init__(
            f"Halting tests. Memory limit reached after '{test_id}': "
            f"{peak_rss} > {max_rss} bytes"
        )


@dataclass(frozen=True, kw_only=True)
class MemoryGovernor:
    """Recycles workers whose resident memory exceeds ``max_rss``.

    With a single worker there is nothing to swap in, so a breach aborts
    the whole run instead.
    """

    max_rss: int | None
    pool_size: int

    def review(self, test_id: str, peak_rss: int) -> Action:
        """Check the memory figure reported with an outcome."""
        if self.max_rss is None or peak_rss <= self.max_rss:
            return Action.CONTINUE

        if self.pool_size > 1:
            log.info(
                "Worker RSS %d exceeded limit %d after %s, recycling",
                peak_rss,
                self.max_rss,
                test_id,
            )
            return Action.RECYCLE

        log.error("Sole worker RSS %d exceeded limit %d", peak_rss, self.max_rss)
        return Action.ABORT


@dataclass(frozen=True, kw_only=True)
class FailureRecycler:
    """Reacts to opaque crashes; structured failures never recycle anything.

    ``sole_worker_crash_policy`` decides what a crash does when the pool has
    one worker and exit-on-first-error is off: ``reuse`` keeps sending tasks
    to the same process, ``halt`` stops intake and skips the rest.
    """

    exit_on_error: bool
    pool_size: int
    sole_worker_crash_policy: SoleWorkerCrashPolicy = "reuse"

    def review(self, outcome: Outcome) -> Action:
        """Decide how to continue after ``outcome``."""
        if not isinstance(outcome, OpaqueCrash):
            return Action.CONTINUE
        if self.exit_on_error:
            return Action.HALT_INTAKE
        if self.pool_size > 1:
            return Action.RECYCLE
        if self.sole_worker_crash_policy == "halt":
            return Action.HALT_INTAKE
        return Action.CONTINUE
