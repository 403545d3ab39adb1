from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parent.parent

NOW = datetime(2030, 6, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _run_from_project_root(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure tests run with the project root as working directory."""
    monkeypatch.chdir(PROJECT_ROOT)


@pytest.fixture
def clock():
    return lambda: NOW
