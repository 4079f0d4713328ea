"""
Dedup store - tracks which trades were already delivered.

A record is created only after a confirmed delivery. While a record is
present and unexpired, the trade is not delivered again unless its content
fingerprint has changed (e.g. OPEN -> PROCESSING), which makes the record
stale and lets the trade be re-evaluated.

Policies:
    - TTL: expired records are dropped lazily on read and by sweep()
    - Capacity: once max_entries is exceeded the oldest records are evicted
    - Persistence: optional, through a DedupBackend; a failed flush is
      logged and only risks a redundant delivery
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional

from .backends import DedupBackend, DedupRecord, MemoryBackend

if TYPE_CHECKING:
    from trade_monitor.source import Trade

logger = logging.getLogger(__name__)


def fingerprint(trade: "Trade") -> str:
    """
    SHA-256 over the delivery-relevant fields of a trade.

    Only id, status, amount, openPrice and createdAt take part, so a change
    of e.g. pnl alone does not trigger a redelivery.
    """
    canonical = json.dumps(
        {
            "id": trade.id,
            "status": trade.status,
            "amount": trade.amount,
            "openPrice": trade.open_price,
            "createdAt": trade.created_at,
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class DedupConfig:
    """Configuration for the dedup store."""

    ttl_seconds: float = 300.0  # 5 minutes
    max_entries: int = 10_000


class DedupStore:
    """
    In-process record of delivered trades.

    Usage:
        store = DedupStore(DedupConfig(ttl_seconds=300), backend=JsonFileBackend())
        store.load()

        if not store.is_delivered(trade.id, fingerprint(trade)):
            ...deliver...
            store.mark_delivered(trade.id, trade)

        store.flush()
    """

    def __init__(
        self,
        config: Optional[DedupConfig] = None,
        backend: Optional[DedupBackend] = None,
        clock: Optional[Callable[[], float]] = None,  # For testing
    ) -> None:
        """
        Initialize the store.

        Args:
            config: TTL and capacity settings
            backend: Storage backend (in-memory if not provided)
            clock: Time source returning Unix seconds
        """
        self._config = config or DedupConfig()
        self._backend = backend or MemoryBackend()
        self._clock = clock or time.time

        if self._config.max_entries < 1:
            raise ValueError("max_entries must be at least 1")

        # Insertion order == delivered_at order; re-marking moves to the end
        self._records: OrderedDict[str, DedupRecord] = OrderedDict()
        self._dirty = False
        self._evicted = 0

    @property
    def is_persistent(self) -> bool:
        """Whether records survive a restart."""
        return self._backend.persistent

    @property
    def backend(self) -> DedupBackend:
        return self._backend

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, trade_id: object) -> bool:
        return isinstance(trade_id, str) and self.is_delivered(trade_id)

    def _is_expired(self, record: DedupRecord, now: float) -> bool:
        return now - record.delivered_at >= self._config.ttl_seconds

    def is_delivered(self, trade_id: str, trade_fingerprint: Optional[str] = None) -> bool:
        """
        Check whether a trade was already delivered.

        Args:
            trade_id: Trade identifier
            trade_fingerprint: Current fingerprint of the trade; if it differs
                from the stored one the record is stale

        Returns:
            True if an unexpired, matching record exists
        """
        record = self._records.get(trade_id)
        if record is None:
            return False

        if self._is_expired(record, self._clock()):
            del self._records[trade_id]
            self._dirty = True
            return False

        if (
            trade_fingerprint is not None
            and record.fingerprint is not None
            and record.fingerprint != trade_fingerprint
        ):
            logger.info(f"Trade {trade_id} changed since delivery, reprocessing")
            return False

        return True

    def mark_delivered(self, trade_id: str, trade: Optional["Trade"] = None) -> None:
        """
        Record a confirmed delivery.

        Calling this again for the same trade only refreshes the timestamp
        and fingerprint.

        Args:
            trade_id: Trade identifier
            trade: The delivered trade (used for the fingerprint)
        """
        record = DedupRecord(
            trade_id=trade_id,
            delivered_at=self._clock(),
            fingerprint=fingerprint(trade) if trade is not None else None,
            status=trade.status if trade is not None else None,
        )
        self._records[trade_id] = record
        self._records.move_to_end(trade_id)
        self._dirty = True

        if record.fingerprint:
            logger.debug(f"Trade {trade_id} marked delivered (hash: {record.fingerprint[:8]})")
        else:
            logger.debug(f"Trade {trade_id} marked delivered")

        self._enforce_capacity()

    def _enforce_capacity(self) -> None:
        """Evict oldest records until within max_entries."""
        overflow = len(self._records) - self._config.max_entries
        if overflow <= 0:
            return
        for _ in range(overflow):
            self._records.popitem(last=False)
        self._evicted += overflow
        logger.info(f"Dedup store at capacity, evicted {overflow} oldest entries")

    def sweep(self) -> int:
        """
        Drop all expired records.

        Returns:
            Number of records removed
        """
        now = self._clock()
        expired = [k for k, r in self._records.items() if self._is_expired(r, now)]
        for trade_id in expired:
            del self._records[trade_id]

        if expired:
            self._dirty = True
            logger.info(f"Dedup store cleaned: {len(expired)} expired entries removed")
        return len(expired)

    def clear(self) -> None:
        """Remove all records."""
        self._records.clear()
        self._dirty = True

    def load(self) -> int:
        """
        Rehydrate from the backend, skipping expired records.

        Returns:
            Number of records loaded
        """
        try:
            records = self._backend.load()
        except Exception as e:
            logger.error(f"Failed to load dedup store from {self._backend.name}: {e}")
            return 0

        now = self._clock()
        loaded = 0
        for record in sorted(records, key=lambda r: r.delivered_at):
            if self._is_expired(record, now):
                continue
            self._records[record.trade_id] = record
            self._records.move_to_end(record.trade_id)
            loaded += 1

        self._enforce_capacity()
        self._dirty = False
        logger.info(f"Dedup store loaded: {loaded} trades from {self._backend.name}")
        return loaded

    def flush(self, force: bool = False) -> bool:
        """
        Write records to the backend.

        Args:
            force: Write even when nothing changed since the last flush

        Returns:
            True if the backend holds the current state afterwards
        """
        records = self._take_pending(force)
        if records is None:
            return True
        return self._finish_save(self._save(records))

    async def flush_async(self, force: bool = False) -> bool:
        """
        flush() with the backend write done in a worker thread.

        The records are copied on the event loop first, so marks made while
        the write is running are kept dirty for the next flush.
        """
        records = self._take_pending(force)
        if records is None:
            return True
        return self._finish_save(await asyncio.to_thread(self._save, records))

    def _take_pending(self, force: bool) -> Optional[list[DedupRecord]]:
        """Copy the records to write, or None if there is nothing to do."""
        if not self._backend.persistent:
            return None
        if not self._dirty and not force:
            return None
        self._dirty = False
        return list(self._records.values())

    def _save(self, records: list[DedupRecord]) -> bool:
        try:
            self._backend.save(records)
        except Exception as e:
            # Missed flush only means possible redelivery after a restart
            logger.error(f"Failed to save dedup store to {self._backend.name}: {e}")
            return False

        logger.debug(f"Dedup store saved: {len(records)} entries")
        return True

    def _finish_save(self, saved: bool) -> bool:
        if not saved:
            self._dirty = True
        return saved

    def stats(self) -> dict[str, Any]:
        """Counts and settings for reporting."""
        now = self._clock()
        expired = sum(1 for r in self._records.values() if self._is_expired(r, now))
        return {
            "count": len(self._records),
            "active": len(self._records) - expired,
            "expired": expired,
            "evicted": self._evicted,
            "ttl_seconds": self._config.ttl_seconds,
            "max_entries": self._config.max_entries,
            **self._backend.describe(),
        }
