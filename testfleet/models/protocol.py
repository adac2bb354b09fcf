"""Request/response structs exchanged with worker processes."""

from pydantic import Field

from testfleet.models.base import Model
from testfleet.models.outcome import Outcome


class WorkerReady(Model):
    """First message a worker sends once its startup modules are loaded."""

    worker_id: int
    generation: int
    pid: int


class ExecuteRequest(Model):
    """Ask a worker to run one suite file."""

    test_id: str = Field(..., description="Test identifier, e.g. 'core/strings'")
    path: str = Field(..., description="Absolute path of the suite file")
    seed: int = Field(..., ge=0, description="Seed for the global RNG before the run")


class ResourceUsage(Model):
    """Resource figures a worker reports alongside every outcome."""

    duration: float = Field(default=0.0, ge=0, description="Wall time in seconds")
    peak_rss: int = Field(
        default=0, ge=0, description="Peak resident memory of the process in bytes"
    )
    gc_time: float = Field(default=0.0, ge=0, description="Seconds spent in GC")
    bytes_allocated: int = Field(default=0, ge=0, description="Traced allocation peak")


class ExecuteResponse(ResourceUsage):
    """Result of an :class:`ExecuteRequest`.

    ``generation`` is the generation of the worker process that produced the
    response, so answers from a replaced worker can be told apart.
    """

    test_id: str
    generation: int = Field(..., ge=0)
    outcome: Outcome

    @property
    def usage(self) -> ResourceUsage:
        """Resource figures without the outcome."""
        return ResourceUsage(
            duration=self.duration,
            peak_rss=self.peak_rss,
            gc_time=self.gc_time,
            bytes_allocated=self.bytes_allocated,
        )
