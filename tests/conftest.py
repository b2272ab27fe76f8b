"""Pytest configuration and shared fixtures."""

import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from voiceguard.alerting import AlertEngineConfig, AlertRuleEngine  # noqa: E402
from voiceguard.observability import MetricsRegistry  # noqa: E402

# 2026-01-01T00:00:00Z
EPOCH = 1_767_225_600.0


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = EPOCH):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class RecordingSleep:
    """Stands in for asyncio.sleep and records requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def registry(clock):
    return MetricsRegistry(clock=clock)


@pytest.fixture
def engine(registry, clock):
    """Alert engine without default rules and with no dedup or repeat delays."""
    config = AlertEngineConfig(
        register_default_rules=False,
        deduplication_window_seconds=0,
        repeat_interval_seconds=0,
    )
    return AlertRuleEngine(registry, config, clock=clock)
