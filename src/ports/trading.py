from __future__ import annotations

from typing import Protocol

from src.domain.models import Action, Pair, Position


class TradeExecutionPort(Protocol):
    """
    Venue contract consumed by strategies.

    `execute_action` must be at-most-once per client order id: resubmitting the same id
    (e.g. from a retry) must not place a second order.
    `set_leverage` applies to orders that open or extend a position from then on.
    Errors: TransientError (retryable), OrderRejectedError / UnsupportedInstrumentError (terminal).
    """

    async def execute_action(self, action: Action, amount: float, client_order_id: str) -> None: ...

    async def order_filled(self, client_order_id: str) -> tuple[bool, float]: ...

    async def get_balance(self, currency: str) -> float: ...

    async def get_position(self, pair: Pair) -> Position | None: ...

    async def set_position_stops(self, pair: Pair, take_profit: float | None, stop_loss: float | None) -> None: ...

    async def set_leverage(self, pair: Pair, leverage: float) -> None: ...
