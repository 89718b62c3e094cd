from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Action(str, Enum):
    NONE = "none"
    BUY = "buy"
    SELL = "sell"


class PositionSide(str, Enum):
    LONG = "long"
    FLAT = "flat"
    SHORT = "short"


class MarketType(str, Enum):
    SPOT = "spot"
    MARGIN = "margin"


class IntentStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class Pair:
    base: str
    quote: str

    @classmethod
    def parse(cls, raw: str) -> Pair:
        """Parse `BTC_USDT` (base_quote) into a Pair."""
        parts = str(raw or "").strip().upper().split("_")
        if len(parts) != 2 or not all(parts):
            raise ValueError(f"Invalid pair {raw!r}; expected BASE_QUOTE, e.g. BTC_USDT")
        return cls(base=parts[0], quote=parts[1])

    @property
    def symbol(self) -> str:
        """Exchange ticker without separator (BTCUSDT)."""
        return f"{self.base}{self.quote}"

    def __str__(self) -> str:
        return f"{self.base}_{self.quote}"


@dataclass(frozen=True)
class Position:
    side: PositionSide
    quantity: float
    entry_price: float
    leverage: float = 1.0
    stop_loss: float | None = None
    take_profit: float | None = None

    @property
    def is_open(self) -> bool:
        return self.side != PositionSide.FLAT and self.quantity > 0

    def pnl(self, price: float) -> float:
        if not self.is_open:
            return 0.0
        diff = price - self.entry_price
        if self.side == PositionSide.SHORT:
            diff = -diff
        return diff * self.quantity

    def margin(self) -> float:
        lev = self.leverage if self.leverage > 0 else 1.0
        return self.entry_price * self.quantity / lev

    def to_dict(self) -> dict[str, Any]:
        return {
            "side": self.side.value,
            "quantity": float(self.quantity),
            "entry_price": float(self.entry_price),
            "leverage": float(self.leverage),
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
        }


@dataclass(frozen=True)
class TradeEvent:
    action: Action
    pair: Pair
    amount: float
    price: float
    client_order_id: str
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "pair": str(self.pair),
            "amount": float(self.amount),
            "price": float(self.price),
            "client_order_id": self.client_order_id,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class MarketCandle:
    open_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class TradeIntent:
    id: str
    bot_key: str
    action: Action
    amount: float
    price: float
    status: IntentStatus = IntentStatus.PENDING
    error: str | None = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class Decision:
    """Parsed decision service answer. `action` NONE means hold."""

    action: Action
    reasoning: str = ""
    risk_percent: float = 0.0
    leverage: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    invalidation: str = ""
    # Raw action label as returned by the model (buy, open_long, close_short, ...).
    label: str = "hold"

    @classmethod
    def hold(cls, reason: str) -> Decision:
        return cls(action=Action.NONE, reasoning=reason, label="hold")

    @property
    def is_hold(self) -> bool:
        return self.action == Action.NONE


@dataclass
class AveragingState:
    """Bookkeeping of the averaging strategy, persisted between runs."""

    trade_count: int = 0
    reference_price: float = 0.0
    holding: bool = False
    held_amount: float = 0.0
    processed_intents: list[str] = field(default_factory=list)

    def reset(self) -> None:
        self.trade_count = 0
        self.reference_price = 0.0
        self.holding = False
        self.held_amount = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, doc: dict[str, Any]) -> AveragingState:
        return cls(
            trade_count=int(doc.get("trade_count", 0)),
            reference_price=float(doc.get("reference_price", 0.0)),
            holding=bool(doc.get("holding", False)),
            held_amount=float(doc.get("held_amount", 0.0)),
            processed_intents=[str(x) for x in doc.get("processed_intents") or []],
        )


@dataclass(frozen=True)
class DecisionRecord:
    pair: str
    model: str
    action: str
    reasoning: str
    price: float
    quote_balance: float
    risk_percent: float = 0.0
    leverage: float = 1.0
    stop_loss: float | None = None
    take_profit: float | None = None
    position_side: str = PositionSide.FLAT.value
    position_amount: float = 0.0
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class BalanceSnapshot:
    bot_key: str
    pair: str
    base_balance: float
    quote_balance: float
    price: float
    equity: float
    timestamp: datetime = field(default_factory=utc_now)
