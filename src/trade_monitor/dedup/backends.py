"""
Storage backends for the dedup store.

A backend only loads and saves whole record sets; all TTL, fingerprint and
capacity logic lives in DedupStore. Three backends are provided:

    - MemoryBackend: nothing survives a restart (default)
    - JsonFileBackend: JSON list of [trade_id, record] pairs, written
      atomically through a temp file + rename. Also reads legacy
      newline-delimited id files.
    - SqliteBackend: one row per delivered trade in a local SQLite file
"""
from __future__ import annotations

import json
import logging
import os
import sqlite3
import tempfile
import time
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)


@dataclass
class DedupRecord:
    """A trade that was successfully delivered."""

    trade_id: str
    delivered_at: float  # Unix timestamp (seconds)
    fingerprint: Optional[str] = None
    status: Optional[str] = None

    def to_dict(self) -> dict:
        """Serialize; timestamp is stored in milliseconds."""
        return {
            "timestamp": int(self.delivered_at * 1000),
            "hash": self.fingerprint,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, trade_id: str, data: dict) -> "DedupRecord":
        return cls(
            trade_id=str(trade_id),
            delivered_at=float(data["timestamp"]) / 1000,
            fingerprint=data.get("hash"),
            status=data.get("status"),
        )


class DedupBackend:
    """Base class for dedup storage backends."""

    name = "base"
    persistent = False

    def load(self) -> list[DedupRecord]:
        raise NotImplementedError

    def save(self, records: list[DedupRecord]) -> None:
        raise NotImplementedError

    def describe(self) -> dict[str, Any]:
        return {"backend": self.name}


class MemoryBackend(DedupBackend):
    """Keeps nothing outside the process."""

    name = "memory"

    def load(self) -> list[DedupRecord]:
        return []

    def save(self, records: list[DedupRecord]) -> None:
        return None


class JsonFileBackend(DedupBackend):
    """
    JSON file backend.

    File format: [[trade_id, {"timestamp": ms, "hash": ..., "status": ...}], ...]

    A file that is not valid JSON is read as one trade id per line, each
    treated as delivered at load time.
    """

    name = "json"
    persistent = True

    def __init__(self, path: Union[str, Path] = "data/processed_trades.json") -> None:
        self.path = Path(path)

    def load(self) -> list[DedupRecord]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info(f"No dedup file at {self.path}, starting empty")
            return []

        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            return self._load_id_lines(text)
        if not isinstance(data, list):
            return self._load_id_lines(text)

        records = []
        for entry in data:
            try:
                trade_id, payload = entry
                records.append(DedupRecord.from_dict(trade_id, payload))
            except (TypeError, ValueError, KeyError) as e:
                logger.warning(f"Skipping malformed dedup entry {entry!r}: {e}")
        return records

    def _load_id_lines(self, text: str) -> list[DedupRecord]:
        now = time.time()
        ids = [line.strip() for line in text.splitlines() if line.strip()]
        logger.info(f"Read {len(ids)} trade ids from legacy id list {self.path}")
        return [DedupRecord(trade_id=trade_id, delivered_at=now) for trade_id in ids]

    def save(self, records: list[DedupRecord]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [[r.trade_id, r.to_dict()] for r in records]

        # Write to a sibling temp file, then rename over the target
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def describe(self) -> dict[str, Any]:
        return {"backend": self.name, "cache_file": str(self.path)}


class SqliteBackend(DedupBackend):
    """SQLite backend, one row per delivered trade."""

    name = "sqlite"
    persistent = True

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS delivered_trades (
            id TEXT PRIMARY KEY,
            trade_hash TEXT,
            status TEXT,
            delivered_at REAL NOT NULL
        )
    """

    def __init__(self, path: Union[str, Path] = "data/trades.db") -> None:
        self.path = Path(path)

    def _connect(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.path), timeout=5.0)
        conn.execute(self.SCHEMA)
        return conn

    def load(self) -> list[DedupRecord]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT id, delivered_at, trade_hash, status FROM delivered_trades "
                "ORDER BY delivered_at"
            ).fetchall()
        return [
            DedupRecord(trade_id=row[0], delivered_at=row[1], fingerprint=row[2], status=row[3])
            for row in rows
        ]

    def save(self, records: list[DedupRecord]) -> None:
        with closing(self._connect()) as conn:
            # Connection as context manager commits or rolls back the transaction
            with conn:
                conn.execute("DELETE FROM delivered_trades")
                conn.executemany(
                    "INSERT INTO delivered_trades (id, trade_hash, status, delivered_at) "
                    "VALUES (?, ?, ?, ?)",
                    [(r.trade_id, r.fingerprint, r.status, r.delivered_at) for r in records],
                )

    def describe(self) -> dict[str, Any]:
        return {"backend": self.name, "database": str(self.path)}


def create_backend(kind: str = "memory", path: Optional[str] = None) -> DedupBackend:
    """
    Build a backend by name.

    Args:
        kind: "memory", "json" or "sqlite"
        path: File path for persistent backends (backend default if None)
    """
    kind = (kind or "memory").lower()
    if kind == "memory":
        return MemoryBackend()
    if kind == "json":
        return JsonFileBackend(path) if path else JsonFileBackend()
    if kind == "sqlite":
        return SqliteBackend(path) if path else SqliteBackend()
    raise ValueError(f"Unknown dedup backend: {kind}")
