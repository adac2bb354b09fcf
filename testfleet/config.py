"""Run settings, read from ``TESTFLEET_*`` environment variables."""

from pydantic import Field
from pydantic_settings import BaseSettings

from testfleet.governor import SoleWorkerCrashPolicy

MB = 2**20


class RunnerSettings(BaseSettings):
    model_config = {"env_prefix": "TESTFLEET_"}

    # Memory governor (0 = unlimited)
    max_rss_mb: int = Field(default=0, ge=0)

    # Pool sizing
    use_multiple_workers: bool = False
    jobs: int | None = Field(default=None, ge=1)  # overrides the CPU count

    # Failure handling
    exit_on_error: bool = False
    sole_worker_crash_policy: SoleWorkerCrashPolicy = "reuse"

    # Reproducibility; a random 64-bit seed is drawn when unset
    seed: int | None = Field(default=None, ge=0)

    # Shutdown (seconds)
    worker_grace_period: float = Field(default=30.0, ge=0)
    interrupt_grace_period: float = Field(default=10.0, ge=0)

    # Pinned suites that must share state with the controller
    shared_state_tests: list[str] = Field(default_factory=list)

    # Worker launcher plugin
    launcher: str = "process"

    @property
    def max_rss(self) -> int | None:
        """The memory limit in bytes, or None when unlimited."""
        return self.max_rss_mb * MB if self.max_rss_mb else None
