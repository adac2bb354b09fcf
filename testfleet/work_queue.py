"""Shared queue of pending tasks."""

import asyncio
import logging
from collections import deque
from collections.abc import Iterable, Sequence

from testfleet.models.task import TestTask

log = logging.getLogger(__name__)


class WorkQueue:
    """Pending tasks, split into a parallel pool and a node-pinned pool.

    Every Dispatcher takes from the same queue, so ``take`` and ``drain``
    run under one lock: a task is handed out at most once, and anything not
    handed out is either still pending or recorded as discarded.
    """

    def __init__(self) -> None:
        self._pending: deque[TestTask] = deque()
        self._pinned: list[TestTask] = []
        self._discarded: list[TestTask] = []
        self._lock = asyncio.Lock()

    def seed(self, tasks: Iterable[TestTask]) -> None:
        """Load tasks, keeping pinned ones out of the parallel pool."""
        for task in tasks:
            if task.is_node_pinned:
                self._pinned.append(task)
            else:
                self._pending.append(task)
        log.debug(
            "Queue seeded: %d parallel, %d pinned",
            len(self._pending),
            len(self._pinned),
        )

    async def take(self) -> TestTask | None:
        """Remove and return the next parallel task, or None when empty."""
        async with self._lock:
            if not self._pending:
                return None
            return self._pending.popleft()

    async def drain(self) -> int:
        """Discard every pending parallel task and return how many there were."""
        async with self._lock:
            discarded = list(self._pending)
            self._pending.clear()
            self._discarded.extend(discarded)
        if discarded:
            log.info("Discarded %d pending test(s)", len(discarded))
        return len(discarded)

    def remaining_count(self) -> int:
        """Number of parallel tasks not yet taken."""
        return len(self._pending)

    @property
    def pinned(self) -> Sequence[TestTask]:
        """Node-pinned tasks in pinning order."""
        return tuple(self._pinned)

    @property
    def discarded_ids(self) -> frozenset[str]:
        """Ids of tasks removed by :meth:`drain`."""
        return frozenset(t.id for t in self._discarded)
