"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

from pathlib import Path

import pytest

from tsmctl.state import StateRegistry


@pytest.fixture
def registry(tmp_path: Path) -> StateRegistry:
    """Return a registry rooted in a temporary directory."""
    return StateRegistry(tmp_path / "registry")


@pytest.fixture
def unit_dir(tmp_path: Path) -> Path:
    """Return an empty directory standing in for ``/etc/systemd/system``."""
    path = tmp_path / "systemd"
    path.mkdir()
    return path
