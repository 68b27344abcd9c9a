"""Pytest configuration for test discovery with pytest-xdist."""

import sys
from pathlib import Path

import pytest

# Ensure the project root is in sys.path for proper imports with pytest-xdist
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from surge.config import reset_settings  # noqa: E402
from surge.metrics import MetricRecorder  # noqa: E402


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    # Tests see default settings whatever the developer's environment holds.
    for var in (
        "API_URL",
        "SURGE_PROFILE",
        "SURGE_SUMMARY_EXPORT",
        "SURGE_LOGFIRE",
        "SURGE_TELEMETRY_STDERR",
    ):
        monkeypatch.delenv(var, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def recorder() -> MetricRecorder:
    return MetricRecorder()
