from __future__ import annotations

import asyncio
import logging
from typing import Any

from src.db.repositories.bot_state import BotStateRepository
from src.domain.errors import OrderRejectedError, UnsupportedInstrumentError
from src.domain.models import Action, MarketType, Pair, Position, PositionSide
from src.ports.market import PricePort

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_QUOTE = 10_000.0
# Order ids remembered (and persisted) for idempotency and fill queries.
_ORDER_HISTORY = 500


class SimulatedVenue:
    """
    Paper-trading venue with an in-memory wallet, fills at the current feed price.

    Spot: buys spend quote, sells return quote. Margin: opening locks notional / leverage as
    collateral; closing releases the proportional collateral plus realised PnL. Orders are
    keyed by client order id; a repeated id is acknowledged without trading again.
    """

    def __init__(
        self,
        *,
        pair: Pair,
        market_type: MarketType,
        pricer: PricePort,
        leverage: float = 1.0,
        initial_quote: float = DEFAULT_INITIAL_QUOTE,
        state_repo: BotStateRepository | None = None,
        state_key: str | None = None,
    ):
        self.pair = pair
        self.market_type = market_type
        self.pricer = pricer
        self.leverage = max(1.0, float(leverage)) if market_type == MarketType.MARGIN else 1.0
        self.state_repo = state_repo
        self.state_key = f"sim:{state_key or pair}"
        self._lock = asyncio.Lock()

        self.wallet: dict[str, float] = {pair.base: 0.0, pair.quote: float(initial_quote)}
        self.orders: dict[str, dict[str, Any]] = {}
        self.position: Position | None = None
        self.margin_used = 0.0
        self._restore()

    # --- persistence -------------------------------------------------------------------

    def _restore(self) -> None:
        if self.state_repo is None:
            return
        doc = self.state_repo.load(self.state_key)
        if not doc:
            return
        self.wallet.update({k: float(v) for k, v in (doc.get("wallet") or {}).items()})
        self.orders = dict(doc.get("orders") or {})
        self.margin_used = float(doc.get("margin_used", 0.0))
        pos = doc.get("position")
        self.position = (
            Position(
                side=PositionSide(pos["side"]),
                quantity=float(pos["quantity"]),
                entry_price=float(pos["entry_price"]),
                leverage=float(pos.get("leverage", 1.0)),
                stop_loss=pos.get("stop_loss"),
                take_profit=pos.get("take_profit"),
            )
            if pos
            else None
        )
        logger.info(f"Restored simulated wallet for {self.pair}: {self.wallet}")

    def _persist(self) -> None:
        if self.state_repo is None:
            return
        self.state_repo.save(
            self.state_key,
            {
                "pair": str(self.pair),
                "wallet": self.wallet,
                "orders": self.orders,
                "margin_used": self.margin_used,
                "leverage": self.leverage,
                "position": self.position.to_dict() if self.position else None,
            },
        )

    # --- port ---------------------------------------------------------------------------

    async def execute_action(self, action: Action, amount: float, client_order_id: str) -> None:
        if amount <= 0:
            raise OrderRejectedError(f"Order amount must be positive, got {amount}")
        async with self._lock:
            if client_order_id in self.orders:
                logger.info(f"Duplicate client order id {client_order_id}; already executed")
                return
            price = float(await self.pricer.get_price(self.pair))
            if price <= 0:
                raise OrderRejectedError(f"No valid price for {self.pair}")

            if action == Action.BUY:
                filled = self._buy(amount, price)
            elif action == Action.SELL:
                filled = self._sell(amount, price)
            else:
                raise ValueError(f"Unsupported action {action}")

            self.orders[client_order_id] = {"side": action.value, "amount": filled, "price": price}
            while len(self.orders) > _ORDER_HISTORY:
                self.orders.pop(next(iter(self.orders)))
            self._persist()
        logger.info(f"Simulated {action.value} {filled:.8f} {self.pair.base} at {price} (id={client_order_id})")

    async def order_filled(self, client_order_id: str) -> tuple[bool, float]:
        order = self.orders.get(client_order_id)
        if order is None:
            return False, 0.0
        return True, float(order["amount"])

    async def get_balance(self, currency: str) -> float:
        if currency not in (self.pair.base, self.pair.quote):
            raise UnsupportedInstrumentError(f"Currency {currency} is not part of {self.pair}")
        return float(self.wallet.get(currency, 0.0))

    async def get_position(self, pair: Pair) -> Position | None:
        if pair != self.pair:
            raise UnsupportedInstrumentError(f"Venue trades {self.pair}, not {pair}")
        return self.position

    async def set_position_stops(self, pair: Pair, take_profit: float | None, stop_loss: float | None) -> None:
        if pair != self.pair:
            raise UnsupportedInstrumentError(f"Venue trades {self.pair}, not {pair}")
        async with self._lock:
            if self.position is None:
                return
            self.position = Position(
                side=self.position.side,
                quantity=self.position.quantity,
                entry_price=self.position.entry_price,
                leverage=self.position.leverage,
                stop_loss=stop_loss if stop_loss and stop_loss > 0 else None,
                take_profit=take_profit if take_profit and take_profit > 0 else None,
            )
            self._persist()

    async def set_leverage(self, pair: Pair, leverage: float) -> None:
        if pair != self.pair:
            raise UnsupportedInstrumentError(f"Venue trades {self.pair}, not {pair}")
        if self.market_type != MarketType.MARGIN:
            if float(leverage) != 1.0:
                raise UnsupportedInstrumentError(f"{self.pair} is a spot pair; leverage is fixed at 1")
            return
        if leverage < 1:
            raise OrderRejectedError(f"Leverage must be >= 1, got {leverage}")
        async with self._lock:
            if float(leverage) == self.leverage:
                return
            self.leverage = float(leverage)
            self._persist()
        logger.info(f"Simulated leverage for {self.pair} set to {self.leverage}")

    # --- fills --------------------------------------------------------------------------

    def _required_quote(self, notional: float) -> float:
        if self.market_type != MarketType.MARGIN:
            return notional
        return notional / self.leverage

    def _buy(self, amount: float, price: float) -> float:
        if self.position is not None and self.position.side == PositionSide.SHORT:
            return self._close(amount, price)
        required = self._required_quote(amount * price)
        if self.wallet[self.pair.quote] < required:
            raise OrderRejectedError(
                f"Insufficient {self.pair.quote}: have {self.wallet[self.pair.quote]:.8f} need {required:.8f}"
            )
        self.wallet[self.pair.quote] -= required
        self.wallet[self.pair.base] += amount
        if self.market_type == MarketType.MARGIN:
            self.margin_used += required
        self._add_to_position(PositionSide.LONG, amount, price)
        return amount

    def _sell(self, amount: float, price: float) -> float:
        if self.position is not None and self.position.side == PositionSide.LONG:
            return self._close(amount, price)
        if self.market_type != MarketType.MARGIN:
            if self.wallet[self.pair.base] < amount:
                raise OrderRejectedError(
                    f"Insufficient {self.pair.base}: have {self.wallet[self.pair.base]:.8f} need {amount:.8f}"
                )
            self.wallet[self.pair.base] -= amount
            self.wallet[self.pair.quote] += amount * price
            return amount

        required = self._required_quote(amount * price)
        if self.wallet[self.pair.quote] < required:
            raise OrderRejectedError(
                f"Insufficient {self.pair.quote} for short: have {self.wallet[self.pair.quote]:.8f} need {required:.8f}"
            )
        self.wallet[self.pair.quote] -= required
        self.wallet[self.pair.base] -= amount
        self.margin_used += required
        self._add_to_position(PositionSide.SHORT, amount, price)
        return amount

    def _add_to_position(self, side: PositionSide, amount: float, price: float) -> None:
        if self.position is None:
            self.position = Position(side=side, quantity=amount, entry_price=price, leverage=self.leverage)
            return
        total = self.position.quantity + amount
        entry = (self.position.entry_price * self.position.quantity + price * amount) / total
        self.position = Position(
            side=side,
            quantity=total,
            entry_price=entry,
            leverage=self.leverage,
            stop_loss=self.position.stop_loss,
            take_profit=self.position.take_profit,
        )

    def _close(self, amount: float, price: float) -> float:
        pos = self.position
        assert pos is not None
        qty = min(amount, pos.quantity)
        if qty < amount:
            logger.warning(f"Close amount {amount} exceeds position {pos.quantity}; capping")

        if pos.side == PositionSide.LONG:
            self.wallet[self.pair.base] -= qty
        else:
            self.wallet[self.pair.base] += qty

        if self.market_type == MarketType.MARGIN:
            released = self.margin_used * (qty / pos.quantity)
            realised = (price - pos.entry_price) * qty
            if pos.side == PositionSide.SHORT:
                realised = -realised
            self.margin_used = max(0.0, self.margin_used - released)
            self.wallet[self.pair.quote] += released + realised
        else:
            self.wallet[self.pair.quote] += qty * price

        remaining = pos.quantity - qty
        if remaining <= 1e-12:
            self.position = None
            self.margin_used = 0.0
        else:
            self.position = Position(
                side=pos.side,
                quantity=remaining,
                entry_price=pos.entry_price,
                leverage=pos.leverage,
                stop_loss=pos.stop_loss,
                take_profit=pos.take_profit,
            )
        return qty
