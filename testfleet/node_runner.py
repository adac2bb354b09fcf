"""Sequential runner for tests that must run in the controller process."""

import asyncio
import logging
import time
from collections.abc import Callable, Collection, Sequence
from dataclasses import dataclass

from testfleet.cancellation import CancellationToken, OperationCancelledError
from testfleet.console import Console
from testfleet.harness import run_suite
from testfleet.models.outcome import OpaqueCrash
from testfleet.models.protocol import ExecuteRequest, ExecuteResponse
from testfleet.models.result import ResultEntry, ResultLog
from testfleet.models.task import TestTask

log = logging.getLogger(__name__)

CONTROLLER_ID = 0

type SuiteExecutor = Callable[..., ExecuteResponse]


@dataclass(kw_only=True)
class NodeOnlyRunner:
    """Runs node-pinned tasks one at a time, in pinning order, after the pool.

    Each task runs with isolated imports unless its id is listed in
    ``shared_state_tests``. Failures are recorded like pool results, but
    there is no worker to recycle.

    An interrupt stops the runner from waiting on the current task, but a
    thread cannot be killed: the pytest run already in progress keeps going
    until it returns, and the interpreter waits for it before exiting.
    """

    results: ResultLog
    console: Console
    token: CancellationToken
    seed: int
    shared_state_tests: Collection[str] = ()
    executor: SuiteExecutor = run_suite

    async def run(self, tasks: Sequence[TestTask], *, announce: bool = False) -> None:
        """Run ``tasks`` until done or interrupted."""
        if announce and len(tasks) > 1:
            self.console.section("Executing tests that run on the controller only:")

        for task in tasks:
            if self.token.cancelled:
                break
            try:
                await self.run_one(task)
            except OperationCancelledError:
                log.info("Controller abandoned %s on interrupt", task.id)
                break

    async def run_one(self, task: TestTask) -> None:
        """Run a single pinned task and record its result."""
        isolate = task.id not in self.shared_state_tests
        request = ExecuteRequest(test_id=task.id, path=str(task.path), seed=self.seed)
        self.console.started(task.id, CONTROLLER_ID)

        started = time.monotonic()
        try:
            response = await self.token.guard(
                asyncio.to_thread(self.executor, request, isolate=isolate)
            )
        except OperationCancelledError:
            raise
        except Exception as exc:
            log.exception("Controller failed running %s", task.id)
            response = ExecuteResponse(
                test_id=task.id,
                generation=0,
                outcome=OpaqueCrash(info=f"{type(exc).__name__}: {exc}"),
                duration=time.monotonic() - started,
            )

        await self.results.append(
            ResultEntry(
                test_id=task.id,
                outcome=response.outcome,
                duration=time.monotonic() - started,
                worker=CONTROLLER_ID,
                usage=response.usage,
            )
        )

        if isinstance(response.outcome, OpaqueCrash):
            self.console.errored(task.id, CONTROLLER_ID, response.outcome.info)
        else:
            self.console.completed(task.id, CONTROLLER_ID, response)
