"""
Dedup Layer - prevents redundant notification delivery.

This module provides:
    - DedupStore: TTL + capacity bounded record of delivered trades
    - fingerprint: content hash used to detect state changes
    - Backends: MemoryBackend, JsonFileBackend, SqliteBackend
"""

from .backends import (
    DedupBackend,
    DedupRecord,
    JsonFileBackend,
    MemoryBackend,
    SqliteBackend,
    create_backend,
)
from .store import DedupConfig, DedupStore, fingerprint

__all__ = [
    "DedupBackend",
    "DedupConfig",
    "DedupRecord",
    "DedupStore",
    "JsonFileBackend",
    "MemoryBackend",
    "SqliteBackend",
    "create_backend",
    "fingerprint",
]
