"""
Trade Monitor - Main Entry Point

Polls the trades API, forwards OPEN / PROCESSING / PENDING trades to the
configured webhook and serves a small HTTP control surface.

Usage:
    python -m trade_monitor.main                 # Run monitor + control server
    python -m trade_monitor.main --no-server     # Run the monitor only
    python -m trade_monitor.main --probe         # Fetch page 1 and print a summary
    python -m trade_monitor.main --test-webhook  # Send a TRADE_TEST event

Environment Variables:
    API_BASE_URL          Trades endpoint (default: https://api.zaffex.com/token/trades)
    API_TOKEN             Static token sent as the api-token header
    API_TIMEOUT           Source request timeout in ms (default: 10000)
    PAGE_SIZE             Trades per page (default: 1000)
    MAX_CONCURRENT_PAGES  Page requests in flight per scan (default: 10)
    MONITOR_INTERVAL      Scan interval in ms (default: 5000)
    MAX_RETRIES           Webhook attempts per trade per scan (default: 3)
    WEBHOOK_URL           Webhook receiver (unset: deliveries are skipped)
    WEBHOOK_TIMEOUT       Webhook request timeout in ms (default: 5000)
    WEBHOOK_SECRET        HMAC-SHA256 signing secret (unset: unsigned)
    CACHE_TTL             Dedup record lifetime in ms (default: 300000)
    CACHE_MAX_ENTRIES     Dedup capacity (default: 10000)
    CACHE_BACKEND         memory | json | sqlite (default: memory)
    CACHE_PATH            File for json/sqlite backends
    HEALTH_CHECK_HOST     Control server host (default: 0.0.0.0)
    HEALTH_CHECK_PORT     Control server port (default: 3000)
    LOG_LEVEL             DEBUG/INFO/WARNING/ERROR (default: INFO)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from trade_monitor.core import ControllerConfig, ScanController
from trade_monitor.dedup import DedupConfig, DedupStore, create_backend
from trade_monitor.notify import ConfigurationMissing, DispatcherConfig, NotificationDispatcher
from trade_monitor.source import SourceConfig, TradeSourceClient, TradeSourceError

# Configure logging
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def _ms_env(name: str, default_ms: int) -> float:
    """Read a millisecond env var and return seconds."""
    return int(os.environ.get(name) or default_ms) / 1000


@dataclass
class MonitorConfig:
    """Complete monitor configuration."""

    # Trade source
    api_base_url: str = "https://api.zaffex.com/token/trades"
    api_token: str = ""
    api_timeout: float = 10.0
    page_size: int = 1000
    max_concurrent_pages: int = 10

    # Scan loop
    interval_seconds: float = 5.0
    max_retries: int = 3

    # Webhook
    webhook_url: Optional[str] = None
    webhook_timeout: float = 5.0
    webhook_secret: Optional[str] = None

    # Dedup store
    cache_ttl_seconds: float = 300.0
    cache_max_entries: int = 10_000
    cache_backend: str = "memory"
    cache_path: Optional[str] = None

    # Control server
    server_enabled: bool = True
    server_host: str = "0.0.0.0"
    server_port: int = 3000

    @classmethod
    def from_env(cls) -> "MonitorConfig":
        """Load configuration from environment variables."""
        return cls(
            api_base_url=os.environ.get("API_BASE_URL") or "https://api.zaffex.com/token/trades",
            api_token=os.environ.get("API_TOKEN", ""),
            api_timeout=_ms_env("API_TIMEOUT", 10000),
            page_size=int(os.environ.get("PAGE_SIZE") or 1000),
            max_concurrent_pages=int(os.environ.get("MAX_CONCURRENT_PAGES") or 10),
            interval_seconds=_ms_env("MONITOR_INTERVAL", 5000),
            max_retries=int(os.environ.get("MAX_RETRIES") or 3),
            webhook_url=os.environ.get("WEBHOOK_URL") or None,
            webhook_timeout=_ms_env("WEBHOOK_TIMEOUT", 5000),
            webhook_secret=os.environ.get("WEBHOOK_SECRET") or None,
            cache_ttl_seconds=_ms_env("CACHE_TTL", 300000),
            cache_max_entries=int(os.environ.get("CACHE_MAX_ENTRIES") or 10_000),
            cache_backend=os.environ.get("CACHE_BACKEND", "memory").lower(),
            cache_path=os.environ.get("CACHE_PATH") or None,
            server_host=os.environ.get("HEALTH_CHECK_HOST", "0.0.0.0"),
            server_port=int(os.environ.get("HEALTH_CHECK_PORT") or 3000),
        )

    def warnings(self) -> list[str]:
        """Conditions under which the monitor runs degraded."""
        issues = []
        if not self.webhook_url:
            issues.append("WEBHOOK_URL not configured: trades will be detected but not delivered")
        if not self.api_token:
            issues.append("API_TOKEN not configured: the trade source may reject requests")
        return issues

    def source_config(self) -> SourceConfig:
        return SourceConfig(
            base_url=self.api_base_url,
            api_token=self.api_token,
            timeout=self.api_timeout,
            page_size=self.page_size,
            max_concurrent_pages=self.max_concurrent_pages,
        )

    def dispatcher_config(self) -> DispatcherConfig:
        return DispatcherConfig(
            webhook_url=self.webhook_url,
            secret=self.webhook_secret,
            timeout=self.webhook_timeout,
            max_attempts=self.max_retries,
        )

    def dedup_config(self) -> DedupConfig:
        return DedupConfig(
            ttl_seconds=self.cache_ttl_seconds,
            max_entries=self.cache_max_entries,
        )

    def controller_config(self) -> ControllerConfig:
        return ControllerConfig(
            interval_seconds=self.interval_seconds,
            max_attempts=self.max_retries,
        )


class TradeMonitorService:
    """
    Wires and runs all components.

    Every component is created once here and handed to the controller;
    nothing is looked up globally.
    """

    def __init__(self, config: MonitorConfig):
        self.config = config
        self._shutdown_event = asyncio.Event()

        self.source = TradeSourceClient(config.source_config())
        self.dispatcher = NotificationDispatcher(config.dispatcher_config())
        self.store = DedupStore(
            config.dedup_config(),
            backend=create_backend(config.cache_backend, config.cache_path),
        )
        self.controller = ScanController(
            source=self.source,
            dispatcher=self.dispatcher,
            store=self.store,
            config=config.controller_config(),
        )

        self._server = None
        self._server_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the control server and the scan controller."""
        logger.info("=" * 60)
        logger.info("TRADE MONITOR")
        logger.info("=" * 60)

        for issue in self.config.warnings():
            logger.warning(issue)

        self.store.load()

        if self.config.server_enabled:
            self._start_server()

        # Before the first scan so a signal during it requests a shutdown
        self._setup_signal_handlers()
        await self.controller.start()

    def _start_server(self) -> None:
        from trade_monitor.monitoring import create_control_app, create_control_server

        app = create_control_app(self.controller, self.dispatcher)
        self._server = create_control_server(
            app,
            host=self.config.server_host,
            port=self.config.server_port,
        )
        self._server_task = asyncio.create_task(self._server.serve(), name="control_server")
        logger.info(f"HTTP server on port {self.config.server_port}")
        logger.info(f"   Health check: http://localhost:{self.config.server_port}/health")
        logger.info(f"   Stats: http://localhost:{self.config.server_port}/stats")

    async def run(self) -> None:
        """Start, then block until a shutdown is requested."""
        await self.start()

        waiters = [asyncio.create_task(self._shutdown_event.wait(), name="shutdown_wait")]
        if self._server_task:
            waiters.append(self._server_task)

        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        waiters[0].cancel()

        await self.stop()

    def request_shutdown(self, reason: str = "manual") -> None:
        logger.info(f"Shutdown requested ({reason})")
        self._shutdown_event.set()

    async def stop(self) -> None:
        """Stop the controller, the server and close HTTP sessions."""
        await self.controller.stop()

        if self._server is not None:
            self._server.should_exit = True
        if self._server_task is not None:
            try:
                await self._server_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"Control server exited with error: {e}")
            self._server_task = None

        await self.source.close()
        await self.dispatcher.close()
        logger.info("Trade monitor shut down")

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()
        try:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda s=sig: self.request_shutdown(s.name))
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass


async def probe_source(config: MonitorConfig) -> int:
    """Fetch page 1 and print a short summary. Returns an exit code."""
    async with TradeSourceClient(config.source_config()) as client:
        try:
            page = await client.fetch_page(1)
        except TradeSourceError as e:
            logger.error(f"Probe failed: {e} (status={e.status_code})")
            return 1

    print(f"Pages: {page.total_pages}")
    print(f"Total trades: {page.total_count}")
    print(f"Trades on this page: {len(page.trades)}")
    for i, trade in enumerate(page.trades[:3], start=1):
        print(f"{i}. ID: {trade.id}, Status: {trade.status}, Symbol: {trade.symbol}")
    return 0


async def send_test_webhook(config: MonitorConfig) -> int:
    """Send a TRADE_TEST event. Returns an exit code."""
    if not config.webhook_url:
        raise ConfigurationMissing("WEBHOOK_URL is required to send a test webhook")

    async with NotificationDispatcher(config.dispatcher_config()) as dispatcher:
        outcome = await dispatcher.send_test_event()
    return 0 if outcome.success else 1


def load_env_file(path: str = ".env") -> None:
    """Load environment variables from .env file if it exists."""
    env_path = Path(path)
    if env_path.exists():
        logger.info(f"Loading environment from {env_path}")
        with open(env_path) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, _, value = line.partition("=")
                    value = value.strip().strip('"').strip("'")
                    os.environ.setdefault(key.strip(), value)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Trade Monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Path to a .env file (default: .env)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level",
    )
    parser.add_argument(
        "--no-server",
        action="store_true",
        help="Do not start the HTTP control server",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--probe",
        action="store_true",
        help="Fetch page 1 of the trade source, print a summary and exit",
    )
    mode.add_argument(
        "--test-webhook",
        action="store_true",
        help="Send a TRADE_TEST event to the webhook and exit",
    )
    return parser.parse_args(argv)


async def main_async(args: argparse.Namespace) -> int:
    """Async main function."""
    try:
        config = MonitorConfig.from_env()
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    if args.no_server:
        config.server_enabled = False

    try:
        if args.probe:
            return await probe_source(config)
        if args.test_webhook:
            return await send_test_webhook(config)
    except ConfigurationMissing as e:
        logger.error(str(e))
        return 1

    try:
        service = TradeMonitorService(config)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    try:
        await service.run()
        return 0
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    load_env_file(args.env_file)

    if args.log_level:
        logging.getLogger().setLevel(getattr(logging, args.log_level))

    try:
        return asyncio.run(main_async(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
