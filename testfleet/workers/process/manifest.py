"""Process launcher manifest."""

from testfleet.workers.manifest import LauncherManifest
from testfleet.workers.process.config import ProcessLauncherConfig
from testfleet.workers.process.launcher import ProcessLauncher

process_manifest = LauncherManifest(
    config_cls=ProcessLauncherConfig,
    launcher_factory=ProcessLauncher.from_config,
)
