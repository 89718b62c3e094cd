from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from src.domain.errors import OrderNotFilledError
from src.domain.models import Action
from src.ports.trading import TradeExecutionPort
from src.utils.retry import Retrier

logger = logging.getLogger(__name__)


class OrderExecutor:
    """
    Shared submit-then-confirm protocol used by both strategies.

    Every retry of a submission reuses the caller's client order id, so the venue sees
    one logical order no matter how many transport attempts it took.
    """

    def __init__(
        self,
        trader: TradeExecutionPort,
        retrier: Retrier,
        *,
        fill_poll_interval: float = 1.0,
        fill_poll_attempts: int = 10,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if fill_poll_attempts < 1:
            raise ValueError("fill_poll_attempts must be >= 1")
        self.trader = trader
        self.retrier = retrier
        self.fill_poll_interval = float(fill_poll_interval)
        self.fill_poll_attempts = int(fill_poll_attempts)
        self._sleep = sleep

    async def submit(self, action: Action, amount: float, client_order_id: str) -> float:
        """Submit an order and wait for its fill. Returns the filled base amount."""
        if action == Action.NONE:
            raise ValueError("Cannot submit Action.NONE")
        await self.retrier.execute(
            lambda: self.trader.execute_action(action, amount, client_order_id),
            description=f"{action.value} order {client_order_id}",
        )
        logger.info(f"Submitted {action.value} amount={amount:.8f} id={client_order_id}")
        return await self.await_fill(client_order_id)

    async def check_fill(self, client_order_id: str) -> tuple[bool, float]:
        return await self.retrier.execute(
            lambda: self.trader.order_filled(client_order_id),
            description=f"fill check {client_order_id}",
        )

    async def await_fill(self, client_order_id: str) -> float:
        for attempt in range(1, self.fill_poll_attempts + 1):
            filled, filled_amount = await self.check_fill(client_order_id)
            if filled:
                return float(filled_amount)
            if attempt < self.fill_poll_attempts:
                await self._sleep(self.fill_poll_interval)
        raise OrderNotFilledError(client_order_id, self.fill_poll_attempts)
