"""Tests for console output."""

import io
import threading
from unittest.mock import patch

import pytest

from testfleet.console import Console, format_bytes
from testfleet.models.outcome import OpaqueCrash, StructuredFailure
from testfleet.testing.factories import ExecuteResponseFactory, FailureDetailFactory

MB = 2**20


@pytest.mark.parametrize(
    ("count", "expected"),
    [
        (512, "512 bytes"),
        (2048, "2.000 KiB"),
        (3 * MB, "3.000 MiB"),
        (5 * 1024 * MB, "5.000 GiB"),
    ],
)
def test_format_bytes(count: int, expected: str) -> None:
    """Byte counts use the largest fitting binary unit."""
    assert format_bytes(count) == expected


def test_align_for_fits_longest_name() -> None:
    """The name column is wide enough for the longest test and worker id."""
    console = Console(stream=io.StringIO())

    console.align_for(["short", "a/much/longer/test_name"], worker_count=12)

    assert console.name_align == len("a/much/longer/test_name") + 3 + 2


def test_completed_line_has_stats(output: io.StringIO) -> None:
    """Completed tests show time, GC, allocation and RSS figures."""
    console = Console(stream=output)
    response = ExecuteResponseFactory.build(
        duration=2.0, gc_time=0.5, bytes_allocated=4 * MB, peak_rss=100 * MB
    )

    console.completed("core/strings", 3, response)

    line = output.getvalue()
    assert "core/strings" in line
    assert "(3)" in line
    assert "2.00" in line
    assert "25.0" in line
    assert "4.00" in line
    assert "100.00" in line


def test_failed_suite_is_highlighted(output: io.StringIO) -> None:
    """Non-passing outcomes are printed in red."""
    console = Console(stream=output)
    failing = ExecuteResponseFactory.build(
        outcome=StructuredFailure(failures=[FailureDetailFactory.build()])
    )

    def plain(text: str, *args: object, **kwargs: object) -> str:
        return text

    with patch("testfleet.console.colored", side_effect=plain) as colored:
        console.completed("a", 1, failing)

    assert colored.call_args.args[1] == "red"


def test_errored_prints_detail(output: io.StringIO) -> None:
    """Crash details follow the failure line."""
    console = Console(stream=output)

    console.errored("a", 2, OpaqueCrash(info="Traceback ...\nboom").info)

    text = output.getvalue()
    assert "failed at" in text
    assert text.rstrip().endswith("boom")


def test_errored_without_detail(output: io.StringIO) -> None:
    """Without detail only the failure line is printed."""
    console = Console(stream=output)

    console.errored("a", 2, None)

    assert output.getvalue().count("\n") == 2


def test_environment_lists_pool(output: io.StringIO) -> None:
    """The header names the worker count and memory figures."""
    Console(stream=output).environment(4)

    text = output.getvalue()
    assert "workers = 4" in text
    assert "total_memory" in text


def test_concurrent_writes_do_not_interleave() -> None:
    """Each write lands as one unit."""
    output = io.StringIO()
    console = Console(stream=output)

    def write(n: int) -> None:
        for _ in range(50):
            console.write(f"<{n}{'x' * 50}{n}>\n")

    threads = [threading.Thread(target=write, args=(n,)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    lines = output.getvalue().splitlines()
    assert len(lines) == 200
    assert all(line[1] == line[-2] for line in lines)
