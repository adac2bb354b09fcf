"""Tests for the worker process loop."""

import io
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from testfleet.models.outcome import OpaqueCrash, PassOutcome
from testfleet.models.protocol import ExecuteRequest, ExecuteResponse, WorkerReady
from testfleet.worker import handle_line, serve


def fake_run_suite(request: ExecuteRequest, *, generation: int) -> ExecuteResponse:
    """Harness stand-in that passes everything."""
    return ExecuteResponse(
        test_id=request.test_id,
        generation=generation,
        outcome=PassOutcome(pass_count=1),
        duration=0.5,
    )


def _request_line(test_id: str) -> str:
    request = ExecuteRequest(test_id=test_id, path=f"/{test_id}.py", seed=1)
    return request.model_dump_json()


class TestHandleLine:
    """Tests for handle_line."""

    def test_blank_line_is_ignored(self) -> None:
        """Blank lines produce no response."""
        assert handle_line("\n", generation=0) is None

    def test_runs_request(self) -> None:
        """Requests are answered with the worker's generation."""
        with patch("testfleet.worker.run_suite", side_effect=fake_run_suite):
            response = handle_line(_request_line("a"), generation=3)

        assert response is not None
        assert response.test_id == "a"
        assert response.generation == 3

    def test_harness_exception_becomes_crash(self) -> None:
        """Anything escaping the harness is reported as an opaque crash."""
        with patch("testfleet.worker.run_suite", side_effect=MemoryError("oom")):
            response = handle_line(_request_line("a"), generation=0)

        assert response is not None
        assert isinstance(response.outcome, OpaqueCrash)
        assert "MemoryError: oom" in response.outcome.info

    def test_malformed_request_raises(self) -> None:
        """Garbage on the channel is a protocol error."""
        with pytest.raises(ValidationError):
            handle_line("{not json", generation=0)


def test_serve_announces_ready_then_answers() -> None:
    """The ready message comes first, then one response per request."""
    reader = io.StringIO(_request_line("a") + "\n\n" + _request_line("b") + "\n")
    writer = io.StringIO()

    with patch("testfleet.worker.run_suite", side_effect=fake_run_suite):
        serve(reader, writer, worker_id=4, generation=2)

    lines = writer.getvalue().splitlines()
    ready = WorkerReady.model_validate_json(lines[0])
    assert (ready.worker_id, ready.generation) == (4, 2)
    responses = [ExecuteResponse.model_validate_json(line) for line in lines[1:]]
    assert [r.test_id for r in responses] == ["a", "b"]
