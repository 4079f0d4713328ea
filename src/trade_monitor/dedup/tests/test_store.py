"""
Tests for the dedup store.

These tests verify:
- Delivered trades stay delivered until TTL expiry
- Fingerprint mismatch forces redelivery
- mark_delivered idempotence
- Lazy expiry, sweep and evict-oldest capacity policy
- Load / flush through a backend, including flush failures
- flush_async writes off the event loop and keeps failed writes dirty
"""

from dataclasses import replace
from unittest.mock import MagicMock

import pytest

from trade_monitor.dedup.backends import DedupBackend, DedupRecord, MemoryBackend
from trade_monitor.dedup.store import DedupConfig, DedupStore, fingerprint


class TestFingerprint:

    def test_stable_for_same_content(self, open_trade):
        assert fingerprint(open_trade) == fingerprint(replace(open_trade))

    def test_changes_with_status(self, open_trade):
        moved = replace(open_trade, status="PROCESSING")

        assert fingerprint(moved) != fingerprint(open_trade)

    def test_ignores_pnl(self, open_trade):
        """pnl moves constantly while a trade is open; it must not force redelivery."""
        assert fingerprint(replace(open_trade, pnl=12.5)) == fingerprint(open_trade)

    def test_is_sha256_hex(self, open_trade):
        value = fingerprint(open_trade)

        assert len(value) == 64
        int(value, 16)


class TestDelivery:

    def test_unknown_trade_is_not_delivered(self, store):
        assert not store.is_delivered("nope")

    def test_marked_trade_is_delivered(self, store, open_trade):
        store.mark_delivered("T1", open_trade)

        assert store.is_delivered("T1")
        assert store.is_delivered("T1", fingerprint(open_trade))

    def test_stays_delivered_until_ttl(self, store, open_trade, clock):
        store.mark_delivered("T1", open_trade)

        for _ in range(5):
            clock.advance(59)
            assert store.is_delivered("T1")

    def test_expires_at_ttl(self, store, open_trade, clock):
        store.mark_delivered("T1", open_trade)

        clock.advance(300)

        assert not store.is_delivered("T1")
        assert len(store) == 0

    def test_changed_fingerprint_forces_redelivery(self, store, open_trade):
        store.mark_delivered("T1", open_trade)
        moved = replace(open_trade, status="PROCESSING")

        assert not store.is_delivered("T1", fingerprint(moved))
        # Still known without a fingerprint
        assert store.is_delivered("T1")

    def test_remark_refreshes_fingerprint(self, store, open_trade):
        store.mark_delivered("T1", open_trade)
        moved = replace(open_trade, status="PROCESSING")

        store.mark_delivered("T1", moved)

        assert store.is_delivered("T1", fingerprint(moved))
        assert not store.is_delivered("T1", fingerprint(open_trade))

    def test_mark_without_trade(self, store):
        store.mark_delivered("T9")

        assert store.is_delivered("T9")
        assert store.is_delivered("T9", "any-fingerprint")

    def test_mark_twice_is_idempotent(self, store, open_trade):
        store.mark_delivered("T1", open_trade)
        store.mark_delivered("T1", open_trade)

        assert len(store) == 1
        assert store.is_delivered("T1", fingerprint(open_trade))

    def test_remark_refreshes_timestamp(self, store, open_trade, clock):
        store.mark_delivered("T1", open_trade)
        clock.advance(200)
        store.mark_delivered("T1", open_trade)
        clock.advance(200)

        assert store.is_delivered("T1")

    def test_contains(self, store, open_trade):
        store.mark_delivered("T1", open_trade)

        assert "T1" in store
        assert "T2" not in store


class TestCapacity:

    def test_never_exceeds_max_entries(self, store):
        for i in range(20):
            store.mark_delivered(f"T{i}")

        assert len(store) == 5

    def test_evicts_oldest(self, store, clock):
        for i in range(6):
            store.mark_delivered(f"T{i}")
            clock.advance(1)

        assert not store.is_delivered("T0")
        assert all(store.is_delivered(f"T{i}") for i in range(1, 6))
        assert store.stats()["evicted"] == 1

    def test_remark_protects_from_eviction(self, store, clock):
        for i in range(5):
            store.mark_delivered(f"T{i}")
            clock.advance(1)

        store.mark_delivered("T0")
        store.mark_delivered("T5")

        assert store.is_delivered("T0")
        assert not store.is_delivered("T1")

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            DedupStore(DedupConfig(max_entries=0))


class TestSweep:

    def test_sweep_removes_only_expired(self, store, clock):
        store.mark_delivered("old")
        clock.advance(200)
        store.mark_delivered("new")
        clock.advance(150)

        removed = store.sweep()

        assert removed == 1
        assert not store.is_delivered("old")
        assert store.is_delivered("new")

    def test_stats(self, store, clock):
        store.mark_delivered("a")
        clock.advance(400)
        store.mark_delivered("b")

        stats = store.stats()

        assert stats["count"] == 2
        assert stats["active"] == 1
        assert stats["expired"] == 1
        assert stats["ttl_seconds"] == 300
        assert stats["backend"] == "memory"

    def test_clear(self, store):
        store.mark_delivered("a")

        store.clear()

        assert len(store) == 0


class RecordingBackend(DedupBackend):
    """Backend that keeps saved records in memory."""

    name = "recording"
    persistent = True

    def __init__(self, initial=None):
        self.records = list(initial or [])
        self.saves = 0

    def load(self):
        return list(self.records)

    def save(self, records):
        self.saves += 1
        self.records = list(records)


class TestPersistence:

    def test_memory_store_is_not_persistent(self, store):
        assert not store.is_persistent
        assert store.flush() is True

    def test_load_skips_expired(self, clock):
        backend = RecordingBackend([
            DedupRecord("fresh", delivered_at=clock.now - 10, fingerprint="f"),
            DedupRecord("stale", delivered_at=clock.now - 1000),
        ])
        store = DedupStore(DedupConfig(ttl_seconds=300), backend=backend, clock=clock)

        loaded = store.load()

        assert loaded == 1
        assert store.is_delivered("fresh", "f")
        assert not store.is_delivered("stale")

    def test_load_respects_capacity(self, clock):
        backend = RecordingBackend([
            DedupRecord(f"T{i}", delivered_at=clock.now - 100 + i) for i in range(10)
        ])
        store = DedupStore(DedupConfig(max_entries=3), backend=backend, clock=clock)

        store.load()

        assert len(store) == 3
        assert store.is_delivered("T9")
        assert not store.is_delivered("T0")

    def test_load_failure_starts_empty(self, clock):
        backend = RecordingBackend()
        backend.load = MagicMock(side_effect=OSError("disk gone"))
        store = DedupStore(backend=backend, clock=clock)

        assert store.load() == 0
        assert len(store) == 0

    def test_flush_writes_records(self, clock, open_trade):
        backend = RecordingBackend()
        store = DedupStore(backend=backend, clock=clock)
        store.mark_delivered("T1", open_trade)

        assert store.flush() is True

        assert [r.trade_id for r in backend.records] == ["T1"]
        assert backend.records[0].fingerprint == fingerprint(open_trade)

    def test_flush_skips_when_clean(self, clock):
        backend = RecordingBackend()
        store = DedupStore(backend=backend, clock=clock)
        store.mark_delivered("T1")
        store.flush()

        store.flush()

        assert backend.saves == 1

    def test_forced_flush_writes_when_clean(self, clock):
        backend = RecordingBackend()
        store = DedupStore(backend=backend, clock=clock)

        store.flush(force=True)

        assert backend.saves == 1

    def test_flush_failure_is_reported_not_raised(self, clock):
        backend = RecordingBackend()
        backend.save = MagicMock(side_effect=OSError("read-only filesystem"))
        store = DedupStore(backend=backend, clock=clock)
        store.mark_delivered("T1")

        assert store.flush() is False
        # Delivered state is still held in memory
        assert store.is_delivered("T1")

    def test_default_backend_is_memory(self):
        store = DedupStore()

        assert isinstance(store.backend, MemoryBackend)


class TestAsyncFlush:

    @pytest.mark.asyncio
    async def test_writes_records(self, clock, open_trade):
        backend = RecordingBackend()
        store = DedupStore(backend=backend, clock=clock)
        store.mark_delivered("T1", open_trade)

        assert await store.flush_async() is True

        assert [r.trade_id for r in backend.records] == ["T1"]
        assert backend.saves == 1

    @pytest.mark.asyncio
    async def test_skips_when_clean(self, clock):
        backend = RecordingBackend()
        store = DedupStore(backend=backend, clock=clock)
        store.mark_delivered("T1")
        await store.flush_async()

        await store.flush_async()

        assert backend.saves == 1

    @pytest.mark.asyncio
    async def test_memory_store_does_nothing(self, store):
        assert await store.flush_async(force=True) is True

    @pytest.mark.asyncio
    async def test_failure_keeps_store_dirty(self, clock):
        backend = RecordingBackend()
        store = DedupStore(backend=backend, clock=clock)
        store.mark_delivered("T1")
        save = backend.save
        backend.save = MagicMock(side_effect=OSError("read-only filesystem"))

        assert await store.flush_async() is False

        backend.save = save
        assert await store.flush_async() is True
        assert [r.trade_id for r in backend.records] == ["T1"]

    @pytest.mark.asyncio
    async def test_mark_after_write_stays_dirty(self, clock):
        backend = RecordingBackend()
        store = DedupStore(backend=backend, clock=clock)
        store.mark_delivered("T1")
        await store.flush_async()

        store.mark_delivered("T2")
        await store.flush_async()

        assert backend.saves == 2
        assert [r.trade_id for r in backend.records] == ["T1", "T2"]
