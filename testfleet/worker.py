"""Worker process: read requests from stdin, run suites, answer on a private pipe.

Started by the process launcher as ``python -m testfleet.worker``. The
worker's original stdout is kept for protocol messages only; file
descriptor 1 is pointed at stderr so anything a suite prints ends up in the
worker's stderr instead of corrupting the response stream.
"""

import argparse
import importlib
import logging
import os
import sys
import traceback
import tracemalloc
from collections.abc import Sequence
from typing import IO

from pydantic import ValidationError

from testfleet.harness import run_suite
from testfleet.models.outcome import OpaqueCrash
from testfleet.models.protocol import ExecuteRequest, ExecuteResponse, WorkerReady

log = logging.getLogger(__name__)


def take_over_stdout() -> IO[str]:
    """Return a private handle on the current stdout and point fd 1 at stderr."""
    sys.stdout.flush()
    channel = os.fdopen(os.dup(sys.stdout.fileno()), "w", buffering=1)
    os.dup2(sys.stderr.fileno(), sys.stdout.fileno())
    return channel


def handle_line(line: str, *, generation: int) -> ExecuteResponse | None:
    """Answer one request line; None for blank lines."""
    if not line.strip():
        return None

    request = ExecuteRequest.model_validate_json(line)
    try:
        return run_suite(request, generation=generation)
    except Exception:
        log.exception("Harness failed while running %s", request.test_id)
        return ExecuteResponse(
            test_id=request.test_id,
            generation=generation,
            outcome=OpaqueCrash(info=traceback.format_exc()),
        )


def serve(
    reader: IO[str], writer: IO[str], *, worker_id: int, generation: int
) -> None:
    """Announce readiness, then answer requests until stdin closes."""
    ready = WorkerReady(worker_id=worker_id, generation=generation, pid=os.getpid())
    writer.write(ready.model_dump_json() + "\n")
    writer.flush()

    for line in reader:
        response = handle_line(line, generation=generation)
        if response is None:
            continue
        writer.write(response.model_dump_json() + "\n")
        writer.flush()

    log.debug("Worker %d: stdin closed, exiting", worker_id)


def main(argv: Sequence[str] | None = None) -> None:
    """Worker entry point."""
    parser = argparse.ArgumentParser(description="testfleet worker process")
    parser.add_argument("--worker-id", type=int, required=True)
    parser.add_argument("--generation", type=int, default=0)
    parser.add_argument(
        "--startup-module",
        action="append",
        default=[],
        help="Module to import before accepting requests (repeatable)",
    )
    parser.add_argument("--track-allocations", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.WARNING,
        format=f"%(asctime)s - worker {args.worker_id} - %(name)s - "
        "%(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    channel = take_over_stdout()

    if args.track_allocations:
        tracemalloc.start()
    for module in args.startup_module:
        importlib.import_module(module)

    try:
        serve(
            sys.stdin,
            channel,
            worker_id=args.worker_id,
            generation=args.generation,
        )
    except ValidationError:
        log.exception("Worker %d received a malformed request", args.worker_id)
        sys.exit(2)


if __name__ == "__main__":  # pragma: no cover
    main()
