"""Scripted in-memory workers for exercising the scheduler without processes."""

import asyncio
import itertools
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field

from testfleet.models.outcome import Outcome, PassOutcome
from testfleet.models.protocol import ExecuteRequest, ExecuteResponse
from testfleet.workers.base import Worker, WorkerLauncher

type Script = Outcome | ExecuteResponse | Exception


@dataclass(frozen=True, kw_only=True)
class Call:
    """One ``execute`` received by a fake worker."""

    worker_id: int
    generation: int
    test_id: str


@dataclass(kw_only=True)
class FakeWorker(Worker):
    """Answers requests from its launcher's script."""

    worker_id: int
    generation: int
    launcher: "FakeLauncher"
    fake_pid: int
    terminated: bool = False

    @property
    def pid(self) -> int | None:
        return self.fake_pid

    async def execute(self, request: ExecuteRequest) -> ExecuteResponse:
        launcher = self.launcher
        launcher.calls.append(
            Call(
                worker_id=self.worker_id,
                generation=self.generation,
                test_id=request.test_id,
            )
        )
        if delay := launcher.delays.get(request.test_id, launcher.delay):
            await asyncio.sleep(delay)

        script = launcher.scripts.get(request.test_id, PassOutcome(pass_count=1))
        if launcher.on_complete is not None:
            launcher.on_complete(request)

        if isinstance(script, Exception):
            raise script
        if isinstance(script, ExecuteResponse):
            return script
        return ExecuteResponse(
            test_id=request.test_id,
            generation=self.generation,
            outcome=script,
            duration=0.01,
            peak_rss=launcher.peak_rss.get(request.test_id, 0),
        )

    async def terminate(self, grace_period: float) -> None:
        self.terminated = True
        self.launcher.terminated.append((self.worker_id, self.generation))


@dataclass(kw_only=True)
class FakeLauncher(WorkerLauncher):
    """Launches :class:`FakeWorker`s and records everything they do.

    ``scripts`` maps test ids to the outcome to report, a raw response to
    return as-is, or an exception to raise; unlisted tests pass.
    """

    scripts: Mapping[str, Script] = field(default_factory=dict)
    peak_rss: Mapping[str, int] = field(default_factory=dict)
    delays: Mapping[str, float] = field(default_factory=dict)
    delay: float = 0.0
    on_complete: Callable[[ExecuteRequest], None] | None = None
    calls: list[Call] = field(default_factory=list)
    launched: list[tuple[int, int]] = field(default_factory=list)
    terminated: list[tuple[int, int]] = field(default_factory=list)
    workers: list[FakeWorker] = field(default_factory=list)
    _pids: Iterator[int] = field(default_factory=lambda: itertools.count(1000))

    async def launch(self, worker_id: int, generation: int) -> FakeWorker:
        worker = FakeWorker(
            worker_id=worker_id,
            generation=generation,
            launcher=self,
            fake_pid=next(self._pids),
        )
        self.launched.append((worker_id, generation))
        self.workers.append(worker)
        return worker

    def executed(self) -> list[str]:
        """Test ids in the order workers received them."""
        return [call.test_id for call in self.calls]
