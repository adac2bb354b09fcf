"""Run planned tasks across the worker pool, then on the controller."""

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field

from testfleet.cancellation import CancellationToken, InterruptController
from testfleet.config import RunnerSettings
from testfleet.console import Console
from testfleet.dispatcher import Dispatcher, RunningTests
from testfleet.governor import FailureRecycler, MemoryGovernor
from testfleet.harness import run_suite
from testfleet.models.result import ResultLog
from testfleet.models.task import TestTask
from testfleet.node_runner import NodeOnlyRunner, SuiteExecutor
from testfleet.report import ReportAggregator, RunSummary
from testfleet.work_queue import WorkQueue
from testfleet.workers.base import WorkerLauncher
from testfleet.workers.pool import WorkerPool, determine_pool_size, loopback_available

log = logging.getLogger(__name__)


async def log_running_on_interrupt(
    token: CancellationToken, running: RunningTests
) -> None:
    """Log which tests were in flight when the interrupt arrived."""
    await token.wait()
    for test_id, elapsed in running.snapshot():
        log.warning("Interrupted while running %s (%.1fs elapsed)", test_id, elapsed)


@dataclass(frozen=True, kw_only=True)
class TestScheduler:
    """Drives one complete run over a worker launcher."""

    __test__ = False

    launcher: WorkerLauncher
    settings: RunnerSettings
    seed: int
    console: Console = field(default_factory=Console)
    node_executor: SuiteExecutor = run_suite
    cpu_count: int | None = None
    network_available: bool | None = None

    def pool_size(self, task_count: int) -> int:
        """Number of workers the run will use for ``task_count`` parallel tasks."""
        network = (
            loopback_available()
            if self.network_available is None
            else self.network_available
        )
        return determine_pool_size(
            task_count,
            cpu_count=self.settings.jobs or self.cpu_count,
            network_available=network,
            force_multiple=self.settings.use_multiple_workers,
        )

    async def run(self, tasks: Sequence[TestTask]) -> RunSummary:
        """Run every task and merge the results.

        Args:
            tasks: Planned tasks; pinned ones run on the controller after the pool

        Returns:
            The merged report, whatever its verdict

        Raises:
            MemoryLimitExceededError: If the sole worker breaches the memory limit

        """
        started = time.monotonic()
        queue = WorkQueue()
        queue.seed(tasks)
        parallel = [task for task in tasks if not task.is_node_pinned]
        size = self.pool_size(len(parallel))

        results = ResultLog()
        interrupts = InterruptController(
            grace_period=self.settings.interrupt_grace_period
        )
        pool = WorkerPool(self.launcher, grace_period=self.settings.worker_grace_period)
        running = RunningTests()
        dispatchers: list[Dispatcher] = []

        self.console.align_for([task.id for task in tasks], size)
        self.console.environment(size)
        self.console.header()

        with interrupts.handle_signals():
            watcher = asyncio.create_task(
                log_running_on_interrupt(interrupts.token, running)
            )
            try:
                handles = await pool.spawn(size) if size else []
                governor = MemoryGovernor(
                    max_rss=self.settings.max_rss, pool_size=size
                )
                recycler = FailureRecycler(
                    exit_on_error=self.settings.exit_on_error,
                    pool_size=size,
                    sole_worker_crash_policy=self.settings.sole_worker_crash_policy,
                )
                dispatchers = [
                    Dispatcher(
                        handle=handle,
                        pool=pool,
                        queue=queue,
                        results=results,
                        console=self.console,
                        governor=governor,
                        recycler=recycler,
                        token=interrupts.token,
                        seed=self.seed,
                        running=running,
                    )
                    for handle in handles
                ]
                await self._join(interrupts, dispatchers)

                if not interrupts.interrupted:
                    runner = NodeOnlyRunner(
                        results=results,
                        console=self.console,
                        token=interrupts.token,
                        seed=self.seed,
                        shared_state_tests=self.settings.shared_state_tests,
                        executor=self.node_executor,
                    )
                    await runner.run(queue.pinned, announce=size > 1)
            finally:
                watcher.cancel()
                await pool.shutdown_all(0.0 if interrupts.interrupted else None)

        if interrupts.interrupted:
            log.warning(
                "Run interrupted: %d of %d test(s) finished",
                len(results.entries),
                len(tasks),
            )

        aggregator = ReportAggregator(seed=self.seed)
        return aggregator.aggregate(
            entries=results.entries,
            parallel=parallel,
            pinned=queue.pinned,
            skipped_ids=queue.discarded_ids,
            skipped_count=sum(d.skipped for d in dispatchers),
            duration=time.monotonic() - started,
        )

    async def _join(
        self, interrupts: InterruptController, dispatchers: Sequence[Dispatcher]
    ) -> None:
        tasks = [
            asyncio.create_task(d.run(), name=f"dispatcher-{d.handle.id}")
            for d in dispatchers
        ]
        try:
            await interrupts.join(tasks)
        except Exception:
            # Siblings must stop before the pool shuts their workers down
            interrupts.token.cancel()
            for task in tasks:
                task.cancel()
            await asyncio.wait(tasks)
            raise
