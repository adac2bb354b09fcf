"""Tests for the shared work queue."""

import asyncio

from testfleet.models.task import TestTask
from testfleet.testing.factories import TestTaskFactory
from testfleet.work_queue import WorkQueue


def _tasks(*ids: str, pinned: tuple[str, ...] = ()) -> list[TestTask]:
    return [TestTaskFactory.build(id=i, is_node_pinned=i in pinned) for i in ids]


async def test_take_is_fifo() -> None:
    """Tasks come out in the order they were seeded."""
    queue = WorkQueue()
    queue.seed(_tasks("a", "b", "c"))

    taken = [await queue.take() for _ in range(3)]

    assert [t.id for t in taken if t] == ["a", "b", "c"]
    assert await queue.take() is None


async def test_seed_keeps_pinned_tasks_out_of_the_pool() -> None:
    """Pinned tasks are never handed to take()."""
    queue = WorkQueue()
    queue.seed(_tasks("a", "p1", "b", "p2", pinned=("p1", "p2")))

    assert queue.remaining_count() == 2
    assert [t.id for t in queue.pinned] == ["p1", "p2"]
    assert (await queue.take()).id == "a"  # type: ignore[union-attr]
    assert (await queue.take()).id == "b"  # type: ignore[union-attr]
    assert await queue.take() is None


async def test_drain_discards_pending_tasks() -> None:
    """drain() empties the queue and reports how many tasks it dropped."""
    queue = WorkQueue()
    queue.seed(_tasks("a", "b", "c"))
    await queue.take()

    discarded = await queue.drain()

    assert discarded == 2
    assert queue.remaining_count() == 0
    assert queue.discarded_ids == {"b", "c"}
    assert await queue.take() is None


async def test_drain_on_empty_queue_returns_zero() -> None:
    """Draining twice discards nothing the second time."""
    queue = WorkQueue()
    queue.seed(_tasks("a"))
    await queue.drain()

    assert await queue.drain() == 0
    assert queue.discarded_ids == {"a"}


async def test_concurrent_takers_see_each_task_exactly_once() -> None:
    """Many concurrent consumers never share or lose a task."""
    queue = WorkQueue()
    ids = [f"t{i}" for i in range(200)]
    queue.seed(_tasks(*ids))
    seen: list[str] = []

    async def consume() -> None:
        while (task := await queue.take()) is not None:
            seen.append(task.id)
            await asyncio.sleep(0)

    await asyncio.gather(*(consume() for _ in range(8)))

    assert sorted(seen) == sorted(ids)
    assert len(seen) == len(set(seen))


async def test_taken_plus_discarded_is_the_seeded_set() -> None:
    """A drain racing with takers loses nothing."""
    queue = WorkQueue()
    ids = [f"t{i}" for i in range(50)]
    queue.seed(_tasks(*ids))
    taken: list[str] = []

    async def consume() -> None:
        while (task := await queue.take()) is not None:
            taken.append(task.id)
            await asyncio.sleep(0)

    async def drain_soon() -> None:
        await asyncio.sleep(0)
        await queue.drain()

    await asyncio.gather(consume(), consume(), drain_soon())

    assert set(taken).isdisjoint(queue.discarded_ids)
    assert set(taken) | queue.discarded_ids == set(ids)
