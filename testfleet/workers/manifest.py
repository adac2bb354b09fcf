"""Launcher manifest definition for the plugin system."""

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass

from pydantic import BaseModel

from testfleet.workers.base import WorkerLauncher


@dataclass(frozen=True, kw_only=True)
class LauncherManifest[ConfigT: BaseModel]:
    """Manifest describing a worker launcher plugin.

    Holds the launcher's configuration class and a factory that turns a
    validated configuration into a launcher whose lifetime spans the run.
    """

    config_cls: type[ConfigT]
    launcher_factory: Callable[[ConfigT], AbstractAsyncContextManager[WorkerLauncher]]
