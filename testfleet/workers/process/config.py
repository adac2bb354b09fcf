"""Configuration for the process launcher."""

import sys
from collections.abc import Mapping, Sequence
from pathlib import Path

from pydantic import BaseModel, Field


class ProcessLauncherConfig(BaseModel):
    """Configuration for launching workers as local Python processes.

    Every worker, including replacements started after a recycle, gets the
    same interpreter, environment, working directory and startup modules.
    """

    python: str = Field(default_factory=lambda: sys.executable)
    extra_env: Mapping[str, str] = Field(default_factory=dict)
    cwd: Path | None = None
    # Imported by each worker before it accepts requests
    startup_modules: Sequence[str] = ()
    track_allocations: bool = False
    startup_timeout: float = 60.0
    max_message_bytes: int = 64 * 2**20
