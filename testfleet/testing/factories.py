"""Test factories for generating test data."""

from pathlib import Path

from polyfactory import Use
from polyfactory.factories import DataclassFactory
from polyfactory.factories.pydantic_factory import ModelFactory

from testfleet.models.outcome import FailureDetail, PassOutcome, StructuredFailure
from testfleet.models.protocol import ExecuteRequest, ExecuteResponse
from testfleet.models.result import ResultEntry
from testfleet.models.task import TestTask


class TestTaskFactory(DataclassFactory[TestTask]):
    """Factory for TestTask."""

    __test__ = False
    __model__ = TestTask

    path = Use(Path, "suite.py")
    is_node_pinned = False


class FailureDetailFactory(ModelFactory[FailureDetail]):
    """Factory for FailureDetail."""

    kind = "fail"


class StructuredFailureFactory(ModelFactory[StructuredFailure]):
    """Factory for StructuredFailure."""

    failures = Use(lambda: [FailureDetailFactory.build()])


class ExecuteRequestFactory(ModelFactory[ExecuteRequest]):
    """Factory for ExecuteRequest."""


class ExecuteResponseFactory(ModelFactory[ExecuteResponse]):
    """Factory for ExecuteResponse."""

    generation = 0
    outcome = Use(PassOutcome, pass_count=1)
    peak_rss = 0


class ResultEntryFactory(DataclassFactory[ResultEntry]):
    """Factory for ResultEntry."""

    __model__ = ResultEntry

    outcome = Use(PassOutcome, pass_count=1)
    worker = 1
    usage = None
