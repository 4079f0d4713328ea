"""
Core Layer - scan cycle orchestration.

This module provides:
    - ScanController: periodic fetch -> filter -> dispatch loop with start/stop lifecycle
    - ControllerConfig: loop configuration
    - ScanResult: outcome of one scan
    - CumulativeStats: process-lifetime counters
    - ControllerState: STOPPED / RUNNING

Data Flow:
    1. TradeSourceClient.fetch_snapshot() returns every page
    2. Trades in OPEN / PROCESSING / PENDING are kept
    3. DedupStore skips already delivered trades
    4. NotificationDispatcher delivers with retry
    5. DedupStore records successful deliveries
"""

from .controller import (
    ControllerConfig,
    ControllerState,
    CumulativeStats,
    ScanController,
    ScanResult,
)

__all__ = [
    "ControllerConfig",
    "ControllerState",
    "CumulativeStats",
    "ScanController",
    "ScanResult",
]
