"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture
def tmp_home(tmp_path: Path) -> Path:
    """Temporary ~/.hookrelay equivalent."""
    home = tmp_path / ".hookrelay"
    home.mkdir()
    return home
