"""Loading of worker launchers from entry points."""

from importlib.metadata import entry_points
from typing import Any

from testfleet.workers.manifest import LauncherManifest

ENTRY_POINT_GROUP = "testfleet.launchers"


class LauncherNotFoundError(Exception):
    """Raised when no installed launcher is registered under a key."""

    def __init__(self, key: str, available: list[str]) -> None:
        self.key = key
        self.available = available
        super().__init__(
            f"Launcher '{key}' not found. Available launchers: {available}"
        )


def load_launcher_manifest(key: str) -> LauncherManifest[Any]:
    """Load a launcher manifest by key.

    Args:
        key: Entry point name in the ``testfleet.launchers`` group (e.g. "process")

    Returns:
        The launcher manifest the entry point refers to

    Raises:
        LauncherNotFoundError: If no launcher is registered under ``key``

    """
    entries = entry_points(group=ENTRY_POINT_GROUP)
    matches = list(entries.select(name=key))
    if not matches:
        raise LauncherNotFoundError(key, sorted(entries.names))

    manifest: LauncherManifest[Any] = matches[0].load()
    return manifest
