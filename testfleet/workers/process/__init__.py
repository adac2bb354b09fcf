"""Process launcher module."""

from testfleet.workers.process.config import ProcessLauncherConfig
from testfleet.workers.process.launcher import ProcessLauncher, ProcessWorker
from testfleet.workers.process.manifest import process_manifest

__all__ = [
    "ProcessLauncher",
    "ProcessLauncherConfig",
    "ProcessWorker",
    "process_manifest",
]
