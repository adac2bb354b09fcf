"""Bounded pool of worker processes with replacement."""

import asyncio
import logging
import socket
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass

import psutil

from testfleet.workers.base import Worker, WorkerHandle, WorkerLauncher, WorkerState

log = logging.getLogger(__name__)


class StaleWorkerError(Exception):
    """Raised when a handle refers to a replaced or retired worker."""


@dataclass(kw_only=True)
class _Slot:
    generation: int
    worker: Worker
    state: WorkerState = WorkerState.IDLE


def loopback_available() -> bool:
    """Check whether processes may talk to each other over the loopback interface."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
    except OSError:
        return False
    return True


def determine_pool_size(
    task_count: int,
    *,
    cpu_count: int | None = None,
    network_available: bool,
    force_multiple: bool = False,
) -> int:
    """Number of workers to start for ``task_count`` parallel tasks.

    Several workers are only used when inter-process networking is
    available or explicitly forced; otherwise a single worker runs
    everything.
    """
    if task_count <= 0:
        return 0
    if not (network_available or force_multiple):
        return 1
    cpus = cpu_count or psutil.cpu_count() or 1
    return max(1, min(cpus, task_count))


class WorkerPool:
    """Registry of worker slots indexed by id.

    Slots are created by :meth:`spawn`, swapped for fresh processes by
    :meth:`replace` and emptied by :meth:`retire`. Each slot keeps the
    generation of its current worker, which only ever increases.
    """

    def __init__(self, launcher: WorkerLauncher, *, grace_period: float = 30.0) -> None:
        self._launcher = launcher
        self._grace_period = grace_period
        self._slots: dict[int, _Slot] = {}
        self._lock = asyncio.Lock()

    @property
    def size(self) -> int:
        """Number of slots ever spawned (retired ones included)."""
        return len(self._slots)

    async def spawn(self, n: int) -> Sequence[WorkerHandle]:
        """Start ``n`` workers and return their handles."""
        async with self._lock:
            first_id = len(self._slots) + 1
        ids = range(first_id, first_id + n)
        workers = await asyncio.gather(
            *(self._launcher.launch(worker_id, 0) for worker_id in ids)
        )
        async with self._lock:
            for worker_id, worker in zip(ids, workers, strict=True):
                self._slots[worker_id] = _Slot(generation=0, worker=worker)
        log.info("Started %d worker(s)", n)
        return [WorkerHandle(id=worker_id) for worker_id in ids]

    async def replace(self, handle: WorkerHandle) -> WorkerHandle:
        """Terminate the handle's worker and start a fresh one in its slot.

        The fresh worker comes from the same launcher, so it starts with the
        same environment as the originals.
        """
        async with self._lock:
            slot = self._current_slot(handle)
            slot.state = WorkerState.DEAD
            generation = slot.generation + 1

        await slot.worker.terminate(self._grace_period)
        worker = await self._launcher.launch(handle.id, generation)

        async with self._lock:
            self._slots[handle.id] = _Slot(generation=generation, worker=worker)
        log.info("Recycled worker %d (generation %d)", handle.id, generation)
        return WorkerHandle(id=handle.id, generation=generation)

    async def retire(self, handle: WorkerHandle) -> None:
        """Terminate the handle's worker without replacing it."""
        async with self._lock:
            slot = self._slots.get(handle.id)
            if slot is None or slot.state is WorkerState.DEAD:
                return
            if slot.generation != handle.generation:
                raise StaleWorkerError(f"Cannot retire stale handle {handle}")
            slot.state = WorkerState.DEAD
        await slot.worker.terminate(self._grace_period)
        log.debug("Retired worker %d", handle.id)

    async def shutdown_all(self, grace_period: float | None = None) -> None:
        """Terminate every live worker, busy ones included."""
        if grace_period is None:
            grace_period = self._grace_period
        async with self._lock:
            live = [s for s in self._slots.values() if s.state is not WorkerState.DEAD]
            for slot in live:
                slot.state = WorkerState.DEAD
        await asyncio.gather(*(slot.worker.terminate(grace_period) for slot in live))
        if live:
            log.info("Shut down %d worker(s)", len(live))

    @asynccontextmanager
    async def lease(self, handle: WorkerHandle) -> AsyncGenerator[Worker, None]:
        """Borrow the handle's worker for one request, marking it busy meanwhile."""
        async with self._lock:
            slot = self._current_slot(handle)
            if slot.state is not WorkerState.IDLE:
                raise StaleWorkerError(f"Worker {handle.id} is {slot.state}")
            slot.state = WorkerState.BUSY
        try:
            yield slot.worker
        finally:
            if slot.state is WorkerState.BUSY:
                slot.state = WorkerState.IDLE

    def is_current(self, handle: WorkerHandle, generation: int | None = None) -> bool:
        """Whether ``handle`` (or ``generation`` in its slot) is the live incarnation."""
        slot = self._slots.get(handle.id)
        if slot is None or slot.state is WorkerState.DEAD:
            return False
        expected = handle.generation if generation is None else generation
        return slot.generation == handle.generation == expected

    def state(self, handle: WorkerHandle) -> WorkerState:
        """State of the handle's slot; DEAD for stale handles."""
        slot = self._slots.get(handle.id)
        if slot is None or slot.generation != handle.generation:
            return WorkerState.DEAD
        return slot.state

    def pid(self, handle: WorkerHandle) -> int | None:
        """OS process id of the handle's worker."""
        slot = self._slots.get(handle.id)
        return slot.worker.pid if slot is not None else None

    def _current_slot(self, handle: WorkerHandle) -> _Slot:
        slot = self._slots.get(handle.id)
        if slot is None or slot.generation != handle.generation:
            raise StaleWorkerError(f"Handle {handle} is not the current worker")
        if slot.state is WorkerState.DEAD:
            raise StaleWorkerError(f"Worker {handle.id} has been terminated")
        return slot
