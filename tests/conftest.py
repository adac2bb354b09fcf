"""Shared fixtures."""

import io
from pathlib import Path

import pytest

from testfleet.console import Console
from testfleet.testing.workers import FakeLauncher


@pytest.fixture
def output() -> io.StringIO:
    """Buffer receiving console output."""
    return io.StringIO()


@pytest.fixture
def console(output: io.StringIO) -> Console:
    """Console writing into the output buffer."""
    return Console(stream=output)


@pytest.fixture
def launcher() -> FakeLauncher:
    """Launcher of scripted in-memory workers."""
    return FakeLauncher()


@pytest.fixture
def suite_root(tmp_path: Path) -> Path:
    """Directory for suite files."""
    return tmp_path / "suites"


@pytest.fixture(autouse=True)
def no_color(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep ANSI colour codes out of captured output."""
    monkeypatch.setenv("NO_COLOR", "1")
    monkeypatch.delenv("FORCE_COLOR", raising=False)
