"""Workers running as local Python processes, spoken to over pipes."""

import asyncio
import contextlib
import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from pydantic import ValidationError

from testfleet.models.protocol import ExecuteRequest, ExecuteResponse, WorkerReady
from testfleet.workers.base import Worker, WorkerCrashedError, WorkerLauncher
from testfleet.workers.process.config import ProcessLauncherConfig

log = logging.getLogger(__name__)

WORKER_MODULE = "testfleet.worker"


class WorkerStartupError(Exception):
    """Raised when a worker process fails to report that it is ready."""


@dataclass(kw_only=True)
class ProcessWorker(Worker):
    """A worker process exchanging JSON lines over its stdin and stdout."""

    worker_id: int
    generation: int
    process: asyncio.subprocess.Process = field(repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def pid(self) -> int | None:
        """OS process id of the worker."""
        return self.process.pid

    async def execute(self, request: ExecuteRequest) -> ExecuteResponse:
        """Send the request and wait for the single-line response."""
        stdin, stdout = self.process.stdin, self.process.stdout
        if stdin is None or stdout is None:
            raise RuntimeError(f"Worker {self.worker_id} was started without pipes")

        async with self._lock:
            try:
                stdin.write(request.model_dump_json().encode() + b"\n")
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise WorkerCrashedError(
                    self.worker_id, await self.process.wait()
                ) from exc

            line = await stdout.readline()

        if not line:
            raise WorkerCrashedError(self.worker_id, await self.process.wait())
        return ExecuteResponse.model_validate_json(line)

    async def terminate(self, grace_period: float) -> None:
        """Ask the worker to exit by closing stdin; kill it after the grace period."""
        if self.process.returncode is not None:
            return

        if self.process.stdin is not None and not self.process.stdin.is_closing():
            self.process.stdin.close()

        try:
            await asyncio.wait_for(self.process.wait(), timeout=grace_period)
        except TimeoutError:
            log.warning(
                "Worker %d (pid %d) did not exit within %.1fs, killing it",
                self.worker_id,
                self.process.pid,
                grace_period,
            )
            with contextlib.suppress(ProcessLookupError):
                self.process.kill()
            await self.process.wait()


@dataclass(frozen=True, kw_only=True)
class ProcessLauncher(WorkerLauncher):
    """Starts ``python -m testfleet.worker`` processes."""

    config: ProcessLauncherConfig
    _workers: list[ProcessWorker] = field(default_factory=list, repr=False)

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls, config: ProcessLauncherConfig
    ) -> AsyncGenerator["ProcessLauncher", None]:
        """Create a launcher that kills any worker still alive on exit."""
        launcher = cls(config=config)
        try:
            yield launcher
        finally:
            leftovers = [w for w in launcher._workers if w.process.returncode is None]
            if leftovers:
                log.debug("Killing %d leftover worker(s)", len(leftovers))
            await asyncio.gather(*(w.terminate(0) for w in leftovers))

    def command(self, worker_id: int, generation: int) -> list[str]:
        """Command line for one worker incarnation."""
        args = [
            self.config.python,
            "-m",
            WORKER_MODULE,
            "--worker-id",
            str(worker_id),
            "--generation",
            str(generation),
        ]
        for module in self.config.startup_modules:
            args.extend(["--startup-module", module])
        if self.config.track_allocations:
            args.append("--track-allocations")
        return args

    async def launch(self, worker_id: int, generation: int) -> ProcessWorker:
        """Start a worker and wait until it reports ready."""
        env = {**os.environ, **self.config.extra_env}
        # New session: a terminal ^C reaches the controller only
        process = await asyncio.create_subprocess_exec(
            *self.command(worker_id, generation),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            cwd=self.config.cwd,
            env=env,
            start_new_session=True,
            limit=self.config.max_message_bytes,
        )
        worker = ProcessWorker(
            worker_id=worker_id, generation=generation, process=process
        )
        self._workers.append(worker)

        ready = await self._wait_ready(worker)
        log.debug(
            "Worker %d (generation %d) ready as pid %d",
            ready.worker_id,
            ready.generation,
            ready.pid,
        )
        return worker

    async def _wait_ready(self, worker: ProcessWorker) -> WorkerReady:
        stdout = worker.process.stdout
        if stdout is None:
            raise WorkerStartupError(f"Worker {worker.worker_id} has no stdout pipe")

        try:
            line = await asyncio.wait_for(
                stdout.readline(), timeout=self.config.startup_timeout
            )
        except TimeoutError as exc:
            await worker.terminate(0)
            raise WorkerStartupError(
                f"Worker {worker.worker_id} not ready after "
                f"{self.config.startup_timeout}s"
            ) from exc

        if not line:
            returncode = await worker.process.wait()
            raise WorkerStartupError(
                f"Worker {worker.worker_id} exited during startup "
                f"(exit code {returncode})"
            )

        try:
            return WorkerReady.model_validate_json(line)
        except ValidationError as exc:
            await worker.terminate(0)
            raise WorkerStartupError(
                f"Worker {worker.worker_id} sent an invalid ready message: {line!r}"
            ) from exc
