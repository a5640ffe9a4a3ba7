"""Pytest configuration and fixtures for faultline tests."""

import asyncio
import os
from typing import List

import pytest

from faultline.metrics import MetricsCollector


class FakeClock:
    """Manually advanced clock usable wherever a ``clock`` callable is accepted."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Sleep replacement that records requested delays and returns at once."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def metrics() -> MetricsCollector:
    """Fresh collector with its own registry for each test."""
    return MetricsCollector()


@pytest.fixture
def clean_env(monkeypatch):
    """Remove FAULTLINE_* variables for test isolation."""
    for name in list(os.environ):
        if name.startswith("FAULTLINE_"):
            monkeypatch.delenv(name, raising=False)
    yield


def pytest_configure(config):
    """Configure pytest environment."""
    config.addinivalue_line("markers", "unit: unit tests that don't require external services")


def pytest_collection_modifyitems(config, items):
    """Auto-mark tests based on path."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
