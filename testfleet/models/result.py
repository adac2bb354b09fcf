"""Models for suite execution results."""

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field

from testfleet.models.outcome import Outcome
from testfleet.models.protocol import ResourceUsage


@dataclass(frozen=True, kw_only=True)
class ResultEntry:
    """Outcome of one completed suite.

    ``worker`` is the id of the worker that ran it, 0 for the controller.
    """

    test_id: str
    outcome: Outcome
    duration: float
    worker: int = 0
    usage: ResourceUsage | None = None


@dataclass(kw_only=True)
class ResultLog:
    """Append-only log of results in completion order."""

    _entries: list[ResultEntry] = field(default_factory=list)
    _ids: set[str] = field(default_factory=set)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    async def append(self, entry: ResultEntry) -> None:
        """Record a completed suite; each test id may complete only once."""
        async with self._lock:
            if entry.test_id in self._ids:
                raise ValueError(f"Result for '{entry.test_id}' already recorded")
            self._entries.append(entry)
            self._ids.add(entry.test_id)

    @property
    def entries(self) -> Sequence[ResultEntry]:
        """Snapshot of the recorded entries."""
        return tuple(self._entries)

    @property
    def completed_ids(self) -> frozenset[str]:
        """Ids of every suite that produced a result."""
        return frozenset(self._ids)
