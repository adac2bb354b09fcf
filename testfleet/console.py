"""Human-readable progress output, serialized under one lock."""

import os
import sys
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TextIO

import psutil
from termcolor import colored

from testfleet.models.outcome import is_passing
from testfleet.models.protocol import ExecuteResponse

MB = 2**20

TEST_HEADER = "Test"
WORKER_HEADER = "(Worker)"
COLUMNS = ("Time (s)", "GC (s)", "GC %", "Alloc (MB)", "RSS (MB)")


def format_bytes(count: int) -> str:
    """Render a byte count with a binary unit."""
    if count < 1024:
        return f"{count} bytes"
    value = count / 1024
    for unit in ("KiB", "MiB"):
        if value < 1024:
            return f"{value:.3f} {unit}"
        value /= 1024
    return f"{value:.3f} GiB"


@dataclass(kw_only=True)
class Console:
    """Writes status lines for all Dispatchers without interleaving them."""

    stream: TextIO = field(default_factory=lambda: sys.stdout)
    name_align: int = len(TEST_HEADER) + 1 + len(WORKER_HEADER)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def align_for(self, test_ids: Sequence[str], worker_count: int) -> None:
        """Size the name column for the given tests and worker ids."""
        worker_digits = len(str(max(worker_count, 1)))
        self.name_align = max(
            [len(TEST_HEADER) + 1 + len(WORKER_HEADER)]
            + [len(t) + 3 + worker_digits for t in test_ids]
        )

    def write(self, text: str, color: str | None = None, *, bold: bool = False) -> None:
        """Write ``text`` atomically with respect to other status lines."""
        attrs = ["bold"] if bold else None
        with self._lock:
            self.stream.write(colored(text, color, attrs=attrs))
            self.stream.flush()

    def environment(self, worker_count: int) -> None:
        """Describe the machine and pool the run uses."""
        memory = psutil.virtual_memory()
        uptime = time.time() - psutil.boot_time()
        self.write(
            "Running parallel tests with:\n"
            f"  pid = {os.getpid()}\n"
            f"  workers = {worker_count}\n"
            f"  cpu_count = {os.cpu_count()}\n"
            f"  total_memory = {format_bytes(memory.total)}\n"
            f"  free_memory = {format_bytes(memory.available)}\n"
            f"  uptime = {uptime:.0f}s ({uptime / 3600:.1f} hours)\n\n"
        )

    def header(self) -> None:
        """Print the column header of the stats table."""
        worker = WORKER_HEADER.rjust(self.name_align - len(TEST_HEADER) + 1)
        self.write(f"{TEST_HEADER}{worker} | {' | '.join(COLUMNS)}\n", "white")

    def _name(self, test_id: str, worker: int) -> str:
        return test_id + f"({worker})".rjust(self.name_align - len(test_id) + 1)

    def started(self, test_id: str, worker: int, pid: int | None = None) -> None:
        """Announce that a worker picked up a test."""
        on_pid = f" on pid {pid}" if pid else ""
        padding = " " * len(COLUMNS[0])
        self.write(
            f"{self._name(test_id, worker)} |{padding}"
            f"started at {datetime.now().isoformat(timespec='seconds')}{on_pid}\n",
            "white",
        )

    def completed(self, test_id: str, worker: int, response: ExecuteResponse) -> None:
        """Print the timing and memory line of a finished test."""
        gc_percent = (
            100 * response.gc_time / response.duration if response.duration else 0.0
        )
        cells = (
            f"{response.duration:7.2f}".rjust(len(COLUMNS[0])),
            f"{response.gc_time:5.2f}".rjust(len(COLUMNS[1])),
            f"{gc_percent:4.1f}".rjust(len(COLUMNS[2])),
            f"{response.bytes_allocated / MB:5.2f}".rjust(len(COLUMNS[3])),
            f"{response.peak_rss / MB:5.2f}".rjust(len(COLUMNS[4])),
        )
        color = "white" if is_passing(response.outcome) else "red"
        self.write(f"{self._name(test_id, worker)} | {' | '.join(cells)}\n", color)

    def errored(self, test_id: str, worker: int, detail: str | None) -> None:
        """Print a red failure line, followed by ``detail`` when given."""
        padding = " " * len(COLUMNS[0])
        text = (
            f"{self._name(test_id, worker)} |{padding} "
            f"failed at {datetime.now().isoformat(timespec='seconds')}\n"
        )
        if detail:
            text += detail.rstrip("\n") + "\n"
        self.write(text + "\n", "red")

    def section(self, title: str) -> None:
        """Print a section heading."""
        self.write(f"\n{title}\n")
