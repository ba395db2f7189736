"""Shared fixtures for execgate tests."""

import os
from pathlib import Path

import pytest


@pytest.fixture
def bin_dir(tmp_path, monkeypatch):
    """A fresh directory that is the only PATH entry."""
    path = tmp_path / "bin"
    path.mkdir()
    monkeypatch.setenv("PATH", str(path))
    return path


@pytest.fixture
def make_exe():
    """Factory that writes an executable shell script."""
    def _create(directory: Path, name: str, body: str = "exit 0", mode: int = 0o755) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        exe = directory / name
        exe.write_text(f"#!/bin/sh\n{body}\n")
        exe.chmod(mode)
        return exe
    return _create


@pytest.fixture
def real_path(monkeypatch):
    """Restore a PATH that can find the system shell and coreutils."""
    monkeypatch.setenv("PATH", os.pathsep.join(["/usr/local/bin", "/usr/bin", "/bin"]))
