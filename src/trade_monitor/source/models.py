"""
Data models for the trade source.

These models represent:
- Individual trade records as returned by the trades API
- One page of the paginated response
- A full multi-page snapshot for one scan cycle

Trades are read-only copies of what the source reports. Unknown status
values are kept verbatim so that new lifecycle states never break parsing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class TradeStatus(str, Enum):
    """Known lifecycle states reported by the trade source."""
    OPEN = "OPEN"
    PROCESSING = "PROCESSING"
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


# Transient states that get forwarded to the webhook
STATUSES_OF_INTEREST = frozenset({
    TradeStatus.OPEN.value,
    TradeStatus.PROCESSING.value,
    TradeStatus.PENDING.value,
})


@dataclass(frozen=True)
class Trade:
    """
    Trade record from the trades API.

    Attributes:
        id: Unique trade identifier (always a string, even if the API sends a number)
        status: Lifecycle status as reported (see TradeStatus)
        symbol: Instrument symbol, e.g. BTCUSDT
        direction: BUY / SELL as reported
        amount: Position amount
        open_price: Entry price
        close_price: Exit price (0 or None while open)
        created_at: Creation timestamp string as reported
        is_demo: Demo account flag
        from_bot: Whether the trade originated from a bot
        result: Result field as reported
        user_id: Owning user identifier
        pnl: Profit / loss
        raw: The untouched record from the API
    """
    id: str
    status: str
    symbol: Optional[str] = None
    direction: Optional[str] = None
    amount: Any = None
    open_price: Any = None
    close_price: Any = None
    created_at: Optional[str] = None
    is_demo: Optional[bool] = None
    from_bot: Optional[bool] = None
    result: Any = None
    user_id: Any = None
    pnl: Any = None
    raw: dict = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_of_interest(self) -> bool:
        """Whether this trade is in a state that should be forwarded."""
        return self.status in STATUSES_OF_INTEREST

    @classmethod
    def from_api(cls, data: dict) -> "Trade":
        """
        Build a Trade from an API record.

        Raises:
            ValueError: If the record has no identifier
        """
        trade_id = data.get("id")
        if trade_id is None or trade_id == "":
            raise ValueError("Trade record has no id")

        return cls(
            id=str(trade_id),
            status=str(data.get("status") or ""),
            symbol=data.get("symbol"),
            direction=data.get("direction"),
            amount=data.get("amount"),
            open_price=data.get("openPrice"),
            close_price=data.get("closePrice"),
            created_at=data.get("createdAt"),
            is_demo=data.get("isDemo"),
            from_bot=data.get("fromBot"),
            result=data.get("result"),
            user_id=data.get("userId"),
            pnl=data.get("pnl"),
            raw=dict(data),
        )

    def to_api(self) -> dict:
        """Selected fields in the API's camelCase shape (used for webhook payloads)."""
        return {
            "id": self.id,
            "status": self.status,
            "symbol": self.symbol,
            "direction": self.direction,
            "amount": self.amount,
            "openPrice": self.open_price,
            "closePrice": self.close_price,
            "createdAt": self.created_at,
            "isDemo": self.is_demo,
            "fromBot": self.from_bot,
            "result": self.result,
            "userId": self.user_id,
            "pnl": self.pnl,
        }


@dataclass(frozen=True)
class TradePage:
    """One page of the trades API response."""
    trades: list[Trade]
    total_pages: int
    total_count: int
    current_page: int


@dataclass
class Snapshot:
    """
    All trades fetched during one scan cycle.

    A snapshot is never merged with another cycle's data. Pages that failed
    to fetch are counted in failed_pages; their trades are simply absent.
    """
    trades: list[Trade]
    total_pages: int
    failed_pages: int = 0
    total_count: int = 0
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_complete(self) -> bool:
        """True if every page was fetched successfully."""
        return self.failed_pages == 0

    def statuses(self) -> set[str]:
        """Distinct statuses seen in this snapshot."""
        return {t.status for t in self.trades}
