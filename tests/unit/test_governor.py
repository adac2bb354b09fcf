"""Tests for the memory governor and failure recycler."""

import pytest

from testfleet.governor import (
    Action,
    FailureRecycler,
    MemoryGovernor,
    MemoryLimitExceededError,
)
from testfleet.models.outcome import (
    FailureDetail,
    OpaqueCrash,
    PassOutcome,
    StructuredFailure,
)

MB = 2**20


class TestMemoryGovernor:
    """Tests for MemoryGovernor."""

    def test_unlimited_never_intervenes(self) -> None:
        """Without a limit any RSS is fine."""
        governor = MemoryGovernor(max_rss=None, pool_size=1)

        assert governor.review("a", 100_000 * MB) is Action.CONTINUE

    def test_within_limit_continues(self) -> None:
        """RSS at the limit is still fine."""
        governor = MemoryGovernor(max_rss=100 * MB, pool_size=4)

        assert governor.review("a", 100 * MB) is Action.CONTINUE

    def test_breach_recycles_with_several_workers(self) -> None:
        """A breach swaps the worker when others exist."""
        governor = MemoryGovernor(max_rss=100 * MB, pool_size=4)

        assert governor.review("a", 101 * MB) is Action.RECYCLE

    def test_breach_aborts_with_sole_worker(self) -> None:
        """A breach on the only worker aborts the run."""
        governor = MemoryGovernor(max_rss=100 * MB, pool_size=1)

        assert governor.review("a", 101 * MB) is Action.ABORT


def test_memory_limit_error_message() -> None:
    """The abort error names the test and both figures."""
    error = MemoryLimitExceededError("big", 200, 100)

    assert "Halting tests. Memory limit reached" in str(error)
    assert "'big'" in str(error)
    assert (error.peak_rss, error.max_rss) == (200, 100)


class TestFailureRecycler:
    """Tests for FailureRecycler."""

    @pytest.mark.parametrize("pool_size", [1, 4])
    @pytest.mark.parametrize("exit_on_error", [False, True])
    def test_structured_outcomes_never_recycle(
        self, pool_size: int, exit_on_error: bool
    ) -> None:
        """Assertion failures are ordinary results."""
        recycler = FailureRecycler(exit_on_error=exit_on_error, pool_size=pool_size)
        failure = StructuredFailure(
            pass_count=1, failures=[FailureDetail(kind="fail", test="t")]
        )

        assert recycler.review(PassOutcome()) is Action.CONTINUE
        assert recycler.review(failure) is Action.CONTINUE

    @pytest.mark.parametrize("pool_size", [1, 4])
    def test_crash_with_exit_on_error_halts_intake(self, pool_size: int) -> None:
        """Exit-on-first-error stops intake regardless of pool size."""
        recycler = FailureRecycler(exit_on_error=True, pool_size=pool_size)

        assert recycler.review(OpaqueCrash(info="boom")) is Action.HALT_INTAKE

    def test_crash_recycles_with_several_workers(self) -> None:
        """A crashed worker is replaced when the pool can afford it."""
        recycler = FailureRecycler(exit_on_error=False, pool_size=2)

        assert recycler.review(OpaqueCrash(info="boom")) is Action.RECYCLE

    def test_crash_on_sole_worker_reuses_by_default(self) -> None:
        """The sole worker keeps running tests after a crash."""
        recycler = FailureRecycler(exit_on_error=False, pool_size=1)

        assert recycler.review(OpaqueCrash(info="boom")) is Action.CONTINUE

    def test_crash_on_sole_worker_can_halt(self) -> None:
        """The halt policy skips the rest after a crash on the sole worker."""
        recycler = FailureRecycler(
            exit_on_error=False, pool_size=1, sole_worker_crash_policy="halt"
        )

        assert recycler.review(OpaqueCrash(info="boom")) is Action.HALT_INTAKE
