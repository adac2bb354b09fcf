"""Contracts for worker processes and the launchers that start them."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum

from testfleet.models.protocol import ExecuteRequest, ExecuteResponse


class WorkerState(StrEnum):
    """Lifecycle state of a pool slot."""

    IDLE = "idle"
    BUSY = "busy"
    DEAD = "dead"


@dataclass(frozen=True, kw_only=True)
class WorkerHandle:
    """Reference to one incarnation of a pool slot.

    The pool reuses a slot id when it replaces a worker and bumps
    ``generation``; a handle whose generation is behind the pool's is stale.
    """

    id: int
    generation: int = 0


class WorkerCrashedError(Exception):
    """Raised when a worker process goes away in the middle of a request."""

    def __init__(self, worker_id: int, returncode: int | None) -> None:
        self.worker_id = worker_id
        self.returncode = returncode
        super().__init__(
            f"Worker {worker_id} exited unexpectedly (exit code {returncode})"
        )


class Worker(ABC):
    """A running worker process that executes suites on request."""

    @property
    @abstractmethod
    def pid(self) -> int | None:
        """OS process id, if the worker has one."""

    @abstractmethod
    async def execute(self, request: ExecuteRequest) -> ExecuteResponse:
        """Run one suite and wait for its response.

        Args:
            request: The suite to run

        Returns:
            The worker's response, tagged with the worker's generation

        Raises:
            WorkerCrashedError: If the worker dies before answering

        """

    @abstractmethod
    async def terminate(self, grace_period: float) -> None:
        """Stop the worker, killing it if it outlives ``grace_period`` seconds."""


class WorkerLauncher(ABC):
    """Starts workers that all share the same startup environment."""

    @abstractmethod
    async def launch(self, worker_id: int, generation: int) -> Worker:
        """Start a fresh worker for the given slot incarnation."""
