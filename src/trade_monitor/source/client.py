"""
REST client for the paginated trades API.

Fetches single pages and composes full multi-page snapshots. Page 1 is
fetched first to learn the page count; the remaining pages are fetched
concurrently with a bounded number of in-flight requests.

Failure model:
    - Network errors, timeouts and non-2xx responses raise SourceUnavailable
    - Malformed bodies (bad JSON, missing data array or page count) raise
      SourceProtocolError
    - In fetch_snapshot() only a page 1 failure is raised; failures on any
      other page are counted in Snapshot.failed_pages
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp

from .models import Snapshot, Trade, TradePage

logger = logging.getLogger(__name__)


class TradeSourceError(Exception):
    """Base exception for trade source errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, page: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
        self.page = page


class SourceUnavailable(TradeSourceError):
    """Network error, timeout or non-2xx response from the trade source."""
    pass


class SourceProtocolError(TradeSourceError):
    """Response body is missing required fields or is not valid JSON."""
    pass


@dataclass
class SourceConfig:
    """Configuration for the trade source client."""

    base_url: str = "https://api.zaffex.com/token/trades"
    api_token: str = ""
    timeout: float = 10.0  # seconds
    page_size: int = 1000
    max_concurrent_pages: int = 10


class TradeSourceClient:
    """
    Async client for the trades API.

    Usage:
        async with TradeSourceClient(SourceConfig(api_token="...")) as client:
            page = await client.fetch_page(1)
            snapshot = await client.fetch_snapshot()
            print(f"{len(snapshot.trades)} trades, {snapshot.failed_pages} failed pages")
    """

    def __init__(
        self,
        config: Optional[SourceConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize the client.

        Args:
            config: Source configuration
            session: Optional aiohttp session (created if not provided)
        """
        self._config = config or SourceConfig()
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=self._config.timeout)

        if self._config.max_concurrent_pages < 1:
            raise ValueError("max_concurrent_pages must be at least 1")

    @property
    def config(self) -> SourceConfig:
        return self._config

    async def __aenter__(self) -> "TradeSourceClient":
        """Async context manager entry."""
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    async def close(self) -> None:
        """Close the client session."""
        if self._owns_session and self._session:
            await self._session.close()
            self._session = None

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._config.api_token:
            headers["api-token"] = self._config.api_token
        return headers

    async def _request(self, params: dict[str, Any], page: int) -> Any:
        """
        GET the trades endpoint and return the decoded JSON body.

        Raises:
            SourceUnavailable: On network errors, timeouts and non-2xx statuses
            SourceProtocolError: When the body is not valid JSON
            asyncio.CancelledError: When the task is cancelled (re-raised)
        """
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True

        logger.debug(f"API request: GET {self._config.base_url} page={page}")

        try:
            async with self._session.get(
                self._config.base_url,
                params=params,
                headers=self._headers(),
            ) as response:
                logger.debug(f"API response: {response.status} page={page}")

                if not 200 <= response.status < 300:
                    text = await response.text()
                    raise SourceUnavailable(
                        f"API error on page {page}: {response.status} - {text[:200]}",
                        status_code=response.status,
                        page=page,
                    )

                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise SourceProtocolError(
                        f"Invalid JSON on page {page}: {e}",
                        status_code=response.status,
                        page=page,
                    ) from e

        except asyncio.TimeoutError as e:
            raise SourceUnavailable(f"Request timed out on page {page}", page=page) from e

        except aiohttp.ClientError as e:
            raise SourceUnavailable(f"Request failed on page {page}: {e}", page=page) from e

    async def fetch_page(self, page: int = 1) -> TradePage:
        """
        Fetch one page of trades.

        Args:
            page: 1-based page number

        Returns:
            TradePage with the parsed trades and pagination info

        Raises:
            SourceUnavailable: Network/timeout/non-2xx
            SourceProtocolError: Missing data array or page count
        """
        params = {"page": page, "pageSize": self._config.page_size}
        data = await self._request(params, page)
        return self._parse_page(data, page)

    def _parse_page(self, data: Any, page: int) -> TradePage:
        """Validate and parse a page body."""
        if not isinstance(data, dict):
            raise SourceProtocolError(
                f"Expected JSON object on page {page}, got {type(data).__name__}",
                page=page,
            )

        records = data.get("data")
        if not isinstance(records, list):
            raise SourceProtocolError(f"Response for page {page} has no data array", page=page)

        last_page = data.get("lastPage")
        # bool is an int subclass; reject it explicitly
        if isinstance(last_page, bool) or not isinstance(last_page, int):
            raise SourceProtocolError(f"Response for page {page} has no valid lastPage", page=page)

        trades = []
        for record in records:
            if not isinstance(record, dict):
                logger.warning(f"Skipping non-object trade record on page {page}")
                continue
            try:
                trades.append(Trade.from_api(record))
            except ValueError as e:
                logger.warning(f"Skipping trade record on page {page}: {e}")

        count = data.get("count")
        current = data.get("currentPage")
        return TradePage(
            trades=trades,
            total_pages=max(last_page, 0),
            total_count=count if isinstance(count, int) else len(trades),
            current_page=current if isinstance(current, int) else page,
        )

    async def fetch_snapshot(self) -> Snapshot:
        """
        Fetch every page and aggregate all trades.

        Page 1 is fetched first; its failure is raised because the page count
        is unknown without it. Pages 2..N are fetched concurrently (at most
        max_concurrent_pages in flight) and each failure is only counted.

        Returns:
            Snapshot with trades in page order and the failed page count

        Raises:
            TradeSourceError: If page 1 cannot be fetched
        """
        first = await self.fetch_page(1)
        total_pages = first.total_pages

        logger.info(f"Starting full scan: {total_pages} pages")

        semaphore = asyncio.Semaphore(self._config.max_concurrent_pages)

        async def fetch_bounded(page: int) -> TradePage:
            async with semaphore:
                return await self.fetch_page(page)

        results = await asyncio.gather(
            *(fetch_bounded(page) for page in range(2, total_pages + 1)),
            return_exceptions=True,
        )

        trades = list(first.trades)
        failed_pages = 0

        for page, result in enumerate(results, start=2):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                failed_pages += 1
                logger.error(f"Error fetching page {page}: {result}")
                continue
            trades.extend(result.trades)

        logger.info(
            f"Scan fetched: {len(trades)} trades from {total_pages} pages, "
            f"{failed_pages} failed"
        )

        return Snapshot(
            trades=trades,
            total_pages=total_pages,
            failed_pages=failed_pages,
            total_count=first.total_count,
        )
