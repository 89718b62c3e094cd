from __future__ import annotations

from typing import Protocol

from src.domain.models import TradeEvent


class TradingStrategy(Protocol):
    """
    Contract driven by the orchestrator.

    `trade` returns a TradeEvent when an order was executed, None when there was nothing
    to do this tick, and raises when the tick failed.
    """

    name: str

    async def initialize(self) -> None: ...

    async def trade(self) -> TradeEvent | None: ...

    async def close(self) -> None: ...
