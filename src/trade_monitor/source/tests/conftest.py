"""
Test fixtures for the source layer.

IMPORTANT: All external API calls must be mocked.
Never hit the real trades API in tests.
"""

import pytest

from trade_monitor.source.client import SourceConfig, TradeSourceClient


def make_trade_record(trade_id, status="OPEN", **overrides):
    """A trade record as the API returns it."""
    record = {
        "id": trade_id,
        "status": status,
        "symbol": "BTCUSDT",
        "direction": "BUY",
        "amount": 10,
        "openPrice": 115000.5,
        "closePrice": 0,
        "createdAt": "2024-05-01T12:00:00.000Z",
        "isDemo": False,
        "fromBot": False,
        "result": "OPEN",
        "userId": 4242,
        "pnl": 0,
    }
    record.update(overrides)
    return record


def make_page_response(records, last_page=1, current_page=1, count=None):
    """A page body as the API returns it."""
    return {
        "data": records,
        "lastPage": last_page,
        "currentPage": current_page,
        "count": count if count is not None else len(records),
    }


@pytest.fixture
def source_config():
    """Source config with a small concurrency bound."""
    return SourceConfig(
        base_url="https://trades.test/token/trades",
        api_token="test-token",
        timeout=1.0,
        page_size=2,
        max_concurrent_pages=2,
    )


@pytest.fixture
def client(source_config):
    """A client that is never opened against the network."""
    return TradeSourceClient(source_config)


@pytest.fixture
def sample_record():
    return make_trade_record("trade_001")
