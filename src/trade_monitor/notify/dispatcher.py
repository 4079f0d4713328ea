"""
Webhook dispatcher for trade events.

Posts one JSON envelope per trade to the configured webhook URL:

    {
        "event": "TRADE_OPEN",
        "timestamp": "2024-01-01T00:00:00.000000+00:00",
        "data": {"trade": {...selected fields...}}
    }

When a secret is configured the exact body bytes are signed with
HMAC-SHA256 and sent as "X-Webhook-Signature: sha256=<hex>". Without a
secret the header is omitted and receivers must treat the payload as
unauthenticated.

deliver_with_retry() waits 2**n seconds between attempt n and n+1
(2s, 4s, 8s, ...). The dispatcher never touches the dedup store.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from trade_monitor.source import Trade

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
USER_AGENT = "TradeMonitor/1.0"


class EventKind(str, Enum):
    """Webhook event types."""
    TRADE_OPEN = "TRADE_OPEN"
    TRADE_PROCESSING = "TRADE_PROCESSING"
    TRADE_PENDING = "TRADE_PENDING"
    TRADE_UNKNOWN = "TRADE_UNKNOWN"
    TRADE_TEST = "TRADE_TEST"


_STATUS_EVENTS = {
    "OPEN": EventKind.TRADE_OPEN,
    "PROCESSING": EventKind.TRADE_PROCESSING,
    "PENDING": EventKind.TRADE_PENDING,
}


def event_kind_for(status: str) -> EventKind:
    """Map a trade status to its webhook event type."""
    return _STATUS_EVENTS.get(status, EventKind.TRADE_UNKNOWN)


class SinkDeliveryFailed(Exception):
    """A single webhook POST failed (non-2xx, network error or timeout)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ConfigurationMissing(Exception):
    """Required configuration (webhook URL, API token) is not set."""
    pass


@dataclass
class DispatcherConfig:
    """Configuration for the webhook dispatcher."""

    webhook_url: Optional[str] = None
    secret: Optional[str] = None
    timeout: float = 5.0  # seconds
    max_attempts: int = 3


@dataclass
class DeliveryOutcome:
    """Result of delivering one trade event."""

    success: bool
    trade_id: str
    event: str
    status: Optional[int] = None
    error: Optional[str] = None
    attempts: int = 1
    response_body: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "trade_id": self.trade_id,
            "event": self.event,
            "status": self.status,
            "error": self.error,
            "attempts": self.attempts,
        }


def build_payload(
    trade: Trade,
    kind: EventKind,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Build the webhook envelope for a trade."""
    timestamp = (now or datetime.now(timezone.utc)).isoformat()
    return {
        "event": kind.value,
        "timestamp": timestamp,
        "data": {"trade": trade.to_api()},
    }


def serialize_payload(payload: dict[str, Any]) -> bytes:
    """Compact JSON encoding; these exact bytes are signed and sent."""
    return json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")


def sign_payload(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class NotificationDispatcher:
    """
    Delivers trade events to the webhook sink.

    Usage:
        async with NotificationDispatcher(DispatcherConfig(webhook_url="...")) as dispatcher:
            outcome = await dispatcher.deliver_with_retry(trade, EventKind.TRADE_OPEN)
            if outcome.success:
                store.mark_delivered(trade.id, trade)
    """

    def __init__(
        self,
        config: Optional[DispatcherConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
        _sleep: Optional[Callable[[float], Awaitable[Any]]] = None,  # For testing
    ) -> None:
        """
        Initialize the dispatcher.

        Args:
            config: Dispatcher configuration
            session: Optional aiohttp session (created if not provided)
            _sleep: Injected sleep for backoff (asyncio.sleep by default)
        """
        self._config = config or DispatcherConfig()
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=self._config.timeout)
        self._sleep = _sleep or asyncio.sleep

        if not self._config.webhook_url:
            logger.warning("WEBHOOK_URL not configured. Webhooks will not be sent.")
        else:
            logger.info(f"Webhook configured: {self._config.webhook_url}")

    @property
    def is_configured(self) -> bool:
        return bool(self._config.webhook_url)

    async def __aenter__(self) -> "NotificationDispatcher":
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._owns_session and self._session:
            await self._session.close()
            self._session = None

    def _headers(self, body: bytes) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        if self._config.secret:
            headers[SIGNATURE_HEADER] = f"sha256={sign_payload(body, self._config.secret)}"
        return headers

    async def _post(self, body: bytes, headers: dict[str, str]) -> tuple[int, str]:
        """
        POST the body once.

        Returns:
            (status, response text) for a 2xx response

        Raises:
            SinkDeliveryFailed: On non-2xx, network errors and timeouts
        """
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True

        try:
            async with self._session.post(
                self._config.webhook_url,
                data=body,
                headers=headers,
            ) as response:
                text = await response.text()
                if not 200 <= response.status < 300:
                    raise SinkDeliveryFailed(
                        f"Webhook returned {response.status}: {text[:200]}",
                        status_code=response.status,
                    )
                return response.status, text

        except asyncio.TimeoutError as e:
            raise SinkDeliveryFailed("Webhook request timed out") from e

        except aiohttp.ClientError as e:
            raise SinkDeliveryFailed(f"Webhook request failed: {e}") from e

    async def deliver(self, trade: Trade, kind: Optional[EventKind] = None) -> DeliveryOutcome:
        """
        Deliver one event, one attempt.

        Failures are returned as an unsuccessful outcome, never raised.

        Args:
            trade: The trade to announce
            kind: Event type (derived from trade.status if not given)
        """
        kind = kind or event_kind_for(trade.status)

        if not self.is_configured:
            logger.warning(f"Webhook not sent for trade {trade.id}: URL not configured")
            return DeliveryOutcome(
                success=False,
                trade_id=trade.id,
                event=kind.value,
                error="Webhook URL not configured",
                attempts=0,
            )

        body = serialize_payload(build_payload(trade, kind))
        headers = self._headers(body)

        logger.info(f"Sending webhook POST for trade {trade.id} ({kind.value})")
        logger.debug(f"Webhook payload: {body.decode('utf-8')}")

        try:
            status, text = await self._post(body, headers)
        except SinkDeliveryFailed as e:
            logger.error(f"Webhook POST failed for trade {trade.id}: {e}")
            return DeliveryOutcome(
                success=False,
                trade_id=trade.id,
                event=kind.value,
                status=e.status_code,
                error=str(e),
            )

        logger.info(f"Webhook POST delivered for trade {trade.id}: {status}")
        return DeliveryOutcome(
            success=True,
            trade_id=trade.id,
            event=kind.value,
            status=status,
            response_body=text,
        )

    async def deliver_with_retry(
        self,
        trade: Trade,
        kind: Optional[EventKind] = None,
        max_attempts: Optional[int] = None,
    ) -> DeliveryOutcome:
        """
        Deliver with exponential backoff.

        Waits 2**n seconds between attempt n and n+1. Any failed attempt is
        retried; only running out of attempts is terminal.

        Args:
            trade: The trade to announce
            kind: Event type (derived from trade.status if not given)
            max_attempts: Attempt limit (config.max_attempts if not given)

        Returns:
            The successful outcome, or a failed outcome with attempts=max_attempts
        """
        kind = kind or event_kind_for(trade.status)
        if max_attempts is None:
            max_attempts = self._config.max_attempts
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        if not self.is_configured:
            # Nothing to retry against
            return await self.deliver(trade, kind)

        outcome: Optional[DeliveryOutcome] = None
        for attempt in range(1, max_attempts + 1):
            logger.info(f"Attempt {attempt}/{max_attempts} - sending webhook for trade {trade.id}")

            outcome = await self.deliver(trade, kind)
            if outcome.success:
                outcome.attempts = attempt
                return outcome

            if attempt < max_attempts:
                delay = 2 ** attempt
                logger.warning(
                    f"Retrying webhook for trade {trade.id} in {delay}s "
                    f"(attempt {attempt + 1}/{max_attempts})"
                )
                await self._sleep(delay)

        logger.error(f"Webhook failed after {max_attempts} attempts for trade {trade.id}")
        return DeliveryOutcome(
            success=False,
            trade_id=trade.id,
            event=kind.value,
            status=outcome.status if outcome else None,
            error=f"Max attempts reached: {outcome.error if outcome else 'unknown'}",
            attempts=max_attempts,
        )

    async def send_test_event(self) -> DeliveryOutcome:
        """Send a synthetic TRADE_TEST event to check the receiver."""
        now = datetime.now(timezone.utc)
        trade = Trade(
            id=f"TEST_{int(now.timestamp() * 1000)}",
            status="OPEN",
            symbol="BTCUSDT",
            direction="BUY",
            amount=1,
            open_price=115000,
            close_price=0,
            created_at=now.isoformat(),
            is_demo=True,
            from_bot=False,
            result="OPEN",
            user_id="test_user_monitor",
            pnl=0,
        )
        logger.info("Sending test webhook...")
        outcome = await self.deliver(trade, EventKind.TRADE_TEST)
        if outcome.success:
            logger.info("Test webhook delivered")
        else:
            logger.error(f"Test webhook failed: {outcome.error}")
        return outcome

    def config_summary(self) -> dict[str, Any]:
        """Current webhook settings, without the secret."""
        return {
            "url": self._config.webhook_url,
            "timeout": self._config.timeout,
            "has_secret": bool(self._config.secret),
            "configured": self.is_configured,
        }
