"""
Test fixtures for the dedup layer.
"""

import pytest

from trade_monitor.dedup.store import DedupConfig, DedupStore
from trade_monitor.source.models import Trade


class FakeClock:
    """Controllable time source (Unix seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dedup_config():
    return DedupConfig(ttl_seconds=300, max_entries=5)


@pytest.fixture
def store(dedup_config, clock):
    """In-memory store driven by the fake clock."""
    return DedupStore(dedup_config, clock=clock)


@pytest.fixture
def open_trade():
    return Trade(
        id="T1",
        status="OPEN",
        symbol="BTCUSDT",
        direction="BUY",
        amount=10,
        open_price=115000,
        created_at="2024-05-01T12:00:00Z",
    )
