"""
Source Layer - Trade status API client.

This module provides:
    - TradeSourceClient: fetches single pages and full multi-page snapshots
    - Trade / TradePage / Snapshot models
    - TradeSourceError, SourceUnavailable, SourceProtocolError

Usage:
    from trade_monitor.source import SourceConfig, TradeSourceClient

    async with TradeSourceClient(SourceConfig(api_token="...")) as client:
        snapshot = await client.fetch_snapshot()
"""

from .client import (
    SourceConfig,
    SourceProtocolError,
    SourceUnavailable,
    TradeSourceClient,
    TradeSourceError,
)
from .models import (
    STATUSES_OF_INTEREST,
    Snapshot,
    Trade,
    TradePage,
    TradeStatus,
)

__all__ = [
    # Client
    "SourceConfig",
    "SourceProtocolError",
    "SourceUnavailable",
    "TradeSourceClient",
    "TradeSourceError",
    # Models
    "STATUSES_OF_INTEREST",
    "Snapshot",
    "Trade",
    "TradePage",
    "TradeStatus",
]
