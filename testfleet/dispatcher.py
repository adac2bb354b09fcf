"""Per-worker loop that drains the shared queue."""

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field

from testfleet.cancellation import CancellationToken, OperationCancelledError
from testfleet.console import Console
from testfleet.governor import (
    Action,
    FailureRecycler,
    MemoryGovernor,
    MemoryLimitExceededError,
)
from testfleet.models.outcome import OpaqueCrash
from testfleet.models.protocol import ExecuteRequest, ExecuteResponse
from testfleet.models.result import ResultEntry, ResultLog
from testfleet.models.task import TestTask
from testfleet.work_queue import WorkQueue
from testfleet.workers.base import WorkerHandle
from testfleet.workers.pool import WorkerPool

log = logging.getLogger(__name__)


@dataclass(kw_only=True)
class RunningTests:
    """Tests currently in flight and when they started."""

    _started: dict[str, float] = field(default_factory=dict)

    def start(self, test_id: str) -> None:
        """Mark ``test_id`` as running."""
        self._started[test_id] = time.monotonic()

    def finish(self, test_id: str) -> None:
        """Mark ``test_id`` as no longer running."""
        self._started.pop(test_id, None)

    def snapshot(self) -> Sequence[tuple[str, float]]:
        """Running tests with elapsed seconds, longest-running first."""
        now = time.monotonic()
        return [
            (test_id, now - started)
            for test_id, started in sorted(self._started.items(), key=lambda i: i[1])
        ]


def crash_response(
    request: ExecuteRequest, handle: WorkerHandle, info: str, duration: float
) -> ExecuteResponse:
    """Response standing in for a worker that could not answer."""
    return ExecuteResponse(
        test_id=request.test_id,
        generation=handle.generation,
        outcome=OpaqueCrash(info=info),
        duration=duration,
    )


@dataclass(kw_only=True)
class Dispatcher:
    """Feeds tasks to one worker slot until the queue is empty or the run stops."""

    handle: WorkerHandle
    pool: WorkerPool
    queue: WorkQueue
    results: ResultLog
    console: Console
    governor: MemoryGovernor
    recycler: FailureRecycler
    token: CancellationToken
    seed: int
    running: RunningTests = field(default_factory=RunningTests)
    skipped: int = 0

    async def run(self) -> None:
        """Take, execute and record tasks until none are left.

        Raises:
            MemoryLimitExceededError: If the sole worker breaches the memory limit

        """
        while not self.token.cancelled:
            task = await self.queue.take()
            if task is None:
                break

            try:
                action, response = await self.dispatch(task)
            except OperationCancelledError:
                log.info("Worker %d abandoned %s on interrupt", self.handle.id, task.id)
                return

            if action is Action.ABORT:
                raise MemoryLimitExceededError(
                    task.id, response.peak_rss, self.governor.max_rss or 0
                )
            if action is Action.HALT_INTAKE:
                self.skipped = await self.queue.drain()
                break
            if action is Action.RECYCLE:
                self.handle = await self.pool.replace(self.handle)

        if not self.token.cancelled:
            await self.pool.retire(self.handle)

    async def dispatch(self, task: TestTask) -> tuple[Action, ExecuteResponse]:
        """Run one task on this slot's worker and record the result."""
        request = ExecuteRequest(test_id=task.id, path=str(task.path), seed=self.seed)
        self.running.start(task.id)
        self.console.started(task.id, self.handle.id, self.pool.pid(self.handle))
        started = time.monotonic()
        try:
            response = await self._execute(request, started)
        finally:
            self.running.finish(task.id)

        await self.results.append(
            ResultEntry(
                test_id=task.id,
                outcome=response.outcome,
                duration=time.monotonic() - started,
                worker=self.handle.id,
                usage=response.usage,
            )
        )

        if isinstance(response.outcome, OpaqueCrash):
            detail = None if self.recycler.exit_on_error else response.outcome.info
            self.console.errored(task.id, self.handle.id, detail)
            return self.recycler.review(response.outcome), response

        self.console.completed(task.id, self.handle.id, response)
        return self.governor.review(task.id, response.peak_rss), response

    async def _execute(self, request: ExecuteRequest, started: float) -> ExecuteResponse:
        async with self.pool.lease(self.handle) as worker:
            try:
                response = await self.token.guard(worker.execute(request))
            except OperationCancelledError:
                raise
            except Exception as exc:
                log.warning(
                    "Worker %d failed on %s: %s", self.handle.id, request.test_id, exc
                )
                return crash_response(
                    request,
                    self.handle,
                    f"{type(exc).__name__}: {exc}",
                    time.monotonic() - started,
                )

        if not self.pool.is_current(self.handle, response.generation):
            log.warning(
                "Discarding response for %s from stale generation %d of worker %d",
                request.test_id,
                response.generation,
                self.handle.id,
            )
            return crash_response(
                request,
                self.handle,
                f"Discarded response from stale worker generation {response.generation} "
                f"(current generation {self.handle.generation})",
                time.monotonic() - started,
            )
        return response
