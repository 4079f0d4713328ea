"""
Scan cycle controller - periodic fetch -> filter -> dispatch loop.

One scan:
    1. Fetch the full snapshot from the trade source
    2. Keep trades whose status is OPEN, PROCESSING or PENDING
    3. For each, in snapshot order: skip if already delivered, otherwise
       deliver with retry and mark delivered on success
    4. A failed delivery leaves the trade eligible for the next scan

Lifecycle is STOPPED <-> RUNNING. start() runs one scan immediately, then
schedules further scans every interval_seconds. A scan that raises is
logged and counted but never ends the loop. stop() lets an in-flight scan
finish (up to shutdown_timeout_seconds), flushes a persistent dedup store
and logs a final summary.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from trade_monitor.dedup import DedupStore, fingerprint
from trade_monitor.notify import event_kind_for
from trade_monitor.source import STATUSES_OF_INTEREST, Trade

if TYPE_CHECKING:
    from trade_monitor.notify import NotificationDispatcher
    from trade_monitor.source import TradeSourceClient

logger = logging.getLogger(__name__)


class ControllerState(str, Enum):
    """Controller lifecycle state."""
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass
class ControllerConfig:
    """Configuration for the scan controller."""

    interval_seconds: float = 5.0
    max_attempts: int = 3
    consecutive_error_warning: int = 5
    persist_interval_seconds: float = 60.0
    shutdown_timeout_seconds: float = 30.0


@dataclass
class ScanResult:
    """Outcome of one scan cycle (never persisted)."""

    trades: list[Trade]
    trades_of_interest: list[Trade]
    total_pages: int
    failed_pages: int
    duration_seconds: float = 0.0
    delivered: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return {
            "total_trades": len(self.trades),
            "trades_of_interest": len(self.trades_of_interest),
            "total_pages": self.total_pages,
            "failed_pages": self.failed_pages,
            "duration_seconds": round(self.duration_seconds, 3),
            "delivered": self.delivered,
            "skipped": self.skipped,
            "failed": self.failed,
        }


@dataclass
class CumulativeStats:
    """Process-lifetime counters."""

    total_scans: int = 0
    failed_scans: int = 0
    trades_processed: int = 0
    notifications_sent: int = 0
    delivery_failures: int = 0
    errors: int = 0
    consecutive_errors: int = 0
    started_at: Optional[datetime] = None
    last_scan_at: Optional[datetime] = None
    last_scan: Optional[dict] = field(default=None)

    @property
    def uptime_seconds(self) -> int:
        if self.started_at is None:
            return 0
        return int((datetime.now(timezone.utc) - self.started_at).total_seconds())

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "total_scans": self.total_scans,
            "failed_scans": self.failed_scans,
            "trades_processed": self.trades_processed,
            "notifications_sent": self.notifications_sent,
            "delivery_failures": self.delivery_failures,
            "errors": self.errors,
            "consecutive_errors": self.consecutive_errors,
            "start_time": self.started_at.isoformat() if self.started_at else None,
            "last_scan_at": self.last_scan_at.isoformat() if self.last_scan_at else None,
            "last_scan": self.last_scan,
            "uptime": self.uptime_seconds,
        }


class ScanController:
    """
    Owns the scan loop and its counters.

    Usage:
        controller = ScanController(
            source=TradeSourceClient(source_config),
            dispatcher=NotificationDispatcher(dispatcher_config),
            store=DedupStore(dedup_config),
            config=ControllerConfig(interval_seconds=5),
        )
        await controller.start()
        ...
        await controller.stop()
    """

    def __init__(
        self,
        source: "TradeSourceClient",
        dispatcher: "NotificationDispatcher",
        store: DedupStore,
        config: Optional[ControllerConfig] = None,
    ) -> None:
        """
        Initialize the controller.

        Args:
            source: Trade source client
            dispatcher: Webhook dispatcher
            store: Dedup store (only this controller mutates it)
            config: Loop configuration
        """
        self._source = source
        self._dispatcher = dispatcher
        self._store = store
        self._config = config or ControllerConfig()

        self._state = ControllerState.STOPPED
        self._stats = CumulativeStats()
        self._stop_event = asyncio.Event()
        self._scan_task: Optional[asyncio.Task] = None
        self._persist_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == ControllerState.RUNNING

    @property
    def stats(self) -> CumulativeStats:
        return self._stats

    @property
    def store(self) -> DedupStore:
        return self._store

    async def start(self) -> None:
        """Run one scan now, then schedule periodic scans."""
        if self._state == ControllerState.RUNNING:
            logger.warning("Monitor is already running")
            return
        if self._scan_task is not None and not self._scan_task.done():
            logger.warning("Previous scan still in progress, not starting")
            return

        self._state = ControllerState.RUNNING
        self._stop_event.clear()
        self._stats.started_at = datetime.now(timezone.utc)

        logger.info("Starting trade monitor...")
        logger.info(
            f"Configuration: interval {self._config.interval_seconds}s, "
            f"max attempts {self._config.max_attempts}"
        )

        # Tracked so that stop() waits for (or cancels) the first scan too
        first_scan = asyncio.create_task(self._run_scan_guarded(), name="initial_scan")
        self._scan_task = first_scan
        await asyncio.wait({first_scan})

        # stop() or restart() may have run while the first scan was in flight
        if self._state != ControllerState.RUNNING or self._scan_task is not first_scan:
            return

        self._scan_task = asyncio.create_task(self._scan_loop(), name="scan_loop")
        if self._store.is_persistent:
            self._persist_task = asyncio.create_task(self._persist_loop(), name="dedup_persist")

        logger.info("Trade monitor started")

    async def stop(self) -> None:
        """Stop scheduling, let an in-flight scan finish, flush and report."""
        if self._state == ControllerState.STOPPED:
            return

        logger.info("Stopping trade monitor...")
        self._state = ControllerState.STOPPED
        self._stop_event.set()

        await self._finish_task(self._scan_task)
        await self._finish_task(self._persist_task)
        self._scan_task = None
        self._persist_task = None

        if self._store.is_persistent:
            await self._store.flush_async(force=True)

        logger.info("Trade monitor stopped")
        self.log_summary()

    async def restart(self) -> None:
        """Stop (if running) and start again."""
        await self.stop()
        await self.start()

    async def _finish_task(self, task: Optional[asyncio.Task]) -> None:
        """Wait for a scan or loop task to exit, cancelling it after the shutdown timeout."""
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return

        done, _ = await asyncio.wait({task}, timeout=self._config.shutdown_timeout_seconds)
        if done:
            return

        logger.warning(f"Task {task.get_name()} did not finish in time, cancelling")
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _scan_loop(self) -> None:
        """Scan every interval_seconds until stopped."""
        interval = self._config.interval_seconds

        while self._state == ControllerState.RUNNING:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break  # Stop requested
            except asyncio.TimeoutError:
                pass

            if self._state != ControllerState.RUNNING:
                break

            await self._run_scan_guarded()

    async def _persist_loop(self) -> None:
        """Periodically sweep and flush a persistent dedup store."""
        interval = self._config.persist_interval_seconds

        while self._state == ControllerState.RUNNING:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            self._store.sweep()
            await self._store.flush_async()

    async def _run_scan_guarded(self) -> Optional[ScanResult]:
        """Run a scan; any exception is logged and counted, never raised."""
        try:
            return await self.scan()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Error in periodic scan: {e}")
            self._stats.errors += 1
            return None

    async def scan(self) -> Optional[ScanResult]:
        """
        Run one fetch -> filter -> dispatch pass.

        Returns:
            ScanResult, or None if the snapshot could not be fetched at all
        """
        started = time.monotonic()
        self._stats.total_scans += 1
        self._stats.last_scan_at = datetime.now(timezone.utc)

        logger.debug("Starting trade scan...")

        try:
            snapshot = await self._source.fetch_snapshot()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._record_failed_scan(e)
            return None

        self._stats.consecutive_errors = 0
        if snapshot.failed_pages:
            self._stats.errors += snapshot.failed_pages

        of_interest = [t for t in snapshot.trades if t.status in STATUSES_OF_INTEREST]

        result = ScanResult(
            trades=snapshot.trades,
            trades_of_interest=of_interest,
            total_pages=snapshot.total_pages,
            failed_pages=snapshot.failed_pages,
        )

        logger.info(
            f"Scan complete: {len(snapshot.trades)} total trades, "
            f"{len(of_interest)} of interest, {snapshot.total_pages} pages"
        )
        logger.debug(f"Statuses seen: {', '.join(sorted(snapshot.statuses()))}")

        if of_interest:
            await self._process_trades(of_interest, result)
        else:
            logger.debug("No OPEN/PROCESSING/PENDING trades found")

        result.duration_seconds = time.monotonic() - started
        self._stats.last_scan = result.to_dict()
        logger.debug(f"Scan finished in {result.duration_seconds * 1000:.0f}ms")
        return result

    async def _process_trades(self, trades: list[Trade], result: ScanResult) -> None:
        """Deliver each undelivered trade, updating counters per trade."""
        logger.info(f"Processing {len(trades)} trades of interest...")

        for trade in trades:
            try:
                if self._store.is_delivered(trade.id, fingerprint(trade)):
                    logger.debug(f"Trade {trade.id} already delivered, skipping")
                    result.skipped += 1
                    continue

                logger.info(
                    f"Trade found: id={trade.id} status={trade.status} "
                    f"symbol={trade.symbol} direction={trade.direction} "
                    f"amount={trade.amount} demo={trade.is_demo}"
                )

                outcome = await self._dispatcher.deliver_with_retry(
                    trade,
                    event_kind_for(trade.status),
                    self._config.max_attempts,
                )

                if outcome.success:
                    self._store.mark_delivered(trade.id, trade)
                    self._stats.notifications_sent += 1
                    result.delivered += 1
                    logger.info(f"Webhook delivered for trade {trade.id}")
                else:
                    self._stats.delivery_failures += 1
                    self._stats.errors += 1
                    result.failed += 1
                    logger.error(
                        f"Webhook failed for trade {trade.id} after "
                        f"{outcome.attempts} attempts: {outcome.error}"
                    )

                self._stats.trades_processed += 1

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Error processing trade {trade.id}: {e}")
                self._stats.errors += 1
                result.failed += 1

    def _record_failed_scan(self, error: Exception) -> None:
        """Count a scan that could not fetch its snapshot."""
        self._stats.failed_scans += 1
        self._stats.consecutive_errors += 1
        self._stats.errors += 1

        logger.error(
            f"Scan failed (consecutive error #{self._stats.consecutive_errors}): {error}"
        )
        if self._stats.consecutive_errors >= self._config.consecutive_error_warning:
            logger.warning(
                f"{self._stats.consecutive_errors} consecutive failed scans. "
                f"Check connectivity to the trade source."
            )

    def get_stats(self) -> dict[str, Any]:
        """Counters, running flag and dedup store stats."""
        return {
            **self._stats.to_dict(),
            "state": self._state.value,
            "is_running": self.is_running,
            "cache": self._store.stats(),
        }

    def log_summary(self) -> None:
        """Log a statistics summary."""
        stats = self.get_stats()
        uptime = stats["uptime"]
        logger.info("Monitor statistics:")
        logger.info(f"   Total scans: {stats['total_scans']}")
        logger.info(f"   Trades processed: {stats['trades_processed']}")
        logger.info(f"   Webhooks sent: {stats['notifications_sent']}")
        logger.info(f"   Errors: {stats['errors']}")
        logger.info(f"   Uptime: {uptime // 60}m {uptime % 60}s")
        logger.info(f"   Cache: {stats['cache']['count']} entries")
