"""Outcomes a test suite can produce, as a tagged union."""

from collections.abc import Sequence
from typing import Annotated, Literal

from pydantic import Field

from testfleet.models.base import Model


class FailureDetail(Model):
    """A single failed or errored test inside a suite."""

    kind: Literal["fail", "error"] = Field(
        ..., description="'fail' for assertion failures, 'error' for anything else"
    )
    test: str = Field(..., description="Identifier of the failing test (pytest node id)")
    message: str = Field(default="", description="Rendered failure report")


class PassOutcome(Model):
    """Every test in the suite passed (broken tests do not count against it)."""

    kind: Literal["pass"] = "pass"
    pass_count: int = Field(default=0, ge=0)
    broken_count: int = Field(default=0, ge=0)


class StructuredFailure(Model):
    """The suite ran to completion and reported known pass/broken/failure counts."""

    kind: Literal["structured_failure"] = "structured_failure"
    pass_count: int = Field(default=0, ge=0)
    broken_count: int = Field(default=0, ge=0)
    failures: Sequence[FailureDetail] = Field(default_factory=tuple)


class OpaqueCrash(Model):
    """Something outside the test harness went wrong; nothing else is trusted."""

    kind: Literal["crash"] = "crash"
    info: str


type Outcome = Annotated[
    PassOutcome | StructuredFailure | OpaqueCrash, Field(discriminator="kind")
]


def is_passing(outcome: Outcome) -> bool:
    """Whether an outcome counts as fully passing."""
    match outcome:
        case PassOutcome():
            return True
        case StructuredFailure(failures=failures):
            return not failures
        case _:
            return False
