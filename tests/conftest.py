"""
Shared fixtures.
"""

import stat
from pathlib import Path
from typing import Callable

import pytest

from fakes import FakeCommandRunner, InMemoryClipboard


@pytest.fixture
def write_script(tmp_path: Path) -> Callable[..., str]:
    """Factory writing an executable ``/bin/sh`` script into ``tmp_path``."""

    def _write(name: str, body: str, directory: Path = tmp_path) -> str:
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / name
        path.write_text("#!/bin/sh\n" + body + "\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _write


@pytest.fixture
def clipboard() -> InMemoryClipboard:
    return InMemoryClipboard(text="original clipboard")


@pytest.fixture
def runner() -> FakeCommandRunner:
    return FakeCommandRunner()


@pytest.fixture
def isolated_environ(tmp_path: Path) -> dict:
    """Environment that cannot see any real provider binaries."""
    return {"PATH": str(tmp_path / "empty-bin"), "CLAUDE_CODE_SKIP_DEFAULT": "1", "HOME": str(tmp_path)}


@pytest.fixture(autouse=True)
def _no_config_override(monkeypatch):
    monkeypatch.delenv("DICTATION_TRANSFORMS_CONFIG", raising=False)
