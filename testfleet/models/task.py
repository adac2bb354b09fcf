"""The unit of work handed to the scheduler."""

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True, kw_only=True)
class TestTask:
    """A single suite file to run, created once from the planned test list."""

    __test__ = False

    id: str
    path: Path
    is_node_pinned: bool = False
