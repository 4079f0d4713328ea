"""
Test fixtures for the scan controller.

The trade source and dispatcher are mocks; the dedup store is real so that
delivery state behaves exactly as in production.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from trade_monitor.core.controller import ControllerConfig, ScanController
from trade_monitor.dedup import DedupConfig, DedupStore
from trade_monitor.notify import DeliveryOutcome
from trade_monitor.source import Snapshot, Trade


def make_trade(trade_id: str, status: str = "OPEN", **overrides) -> Trade:
    fields = {
        "id": trade_id,
        "status": status,
        "symbol": "BTCUSDT",
        "direction": "BUY",
        "amount": 10,
        "open_price": 115000,
        "created_at": "2024-05-01T12:00:00Z",
    }
    fields.update(overrides)
    return Trade(**fields)


def make_snapshot(trades, total_pages: int = 1, failed_pages: int = 0) -> Snapshot:
    return Snapshot(
        trades=list(trades),
        total_pages=total_pages,
        failed_pages=failed_pages,
        total_count=len(trades),
    )


def delivered(trade, kind=None, max_attempts=None):
    return DeliveryOutcome(success=True, trade_id=trade.id, event="TRADE_OPEN", status=200)


def failed(trade, kind=None, max_attempts=None):
    return DeliveryOutcome(
        success=False,
        trade_id=trade.id,
        event="TRADE_OPEN",
        status=500,
        error="Max attempts reached: Webhook returned 500",
        attempts=max_attempts or 3,
    )


@pytest.fixture
def mock_source():
    source = MagicMock()
    source.fetch_snapshot = AsyncMock(return_value=make_snapshot([]))
    return source


@pytest.fixture
def mock_dispatcher():
    dispatcher = MagicMock()
    dispatcher.deliver_with_retry = AsyncMock(side_effect=delivered)
    return dispatcher


@pytest.fixture
def store():
    return DedupStore(DedupConfig(ttl_seconds=300, max_entries=100))


@pytest.fixture
def controller_config():
    return ControllerConfig(
        interval_seconds=0.01,
        max_attempts=3,
        consecutive_error_warning=5,
        persist_interval_seconds=0.01,
        shutdown_timeout_seconds=1.0,
    )


@pytest.fixture
def controller(mock_source, mock_dispatcher, store, controller_config):
    return ScanController(mock_source, mock_dispatcher, store, controller_config)
