from __future__ import annotations

from typing import Protocol

from src.domain.models import MarketCandle, Pair


class PricePort(Protocol):
    async def get_price(self, pair: Pair) -> float: ...


class MarketDataPort(Protocol):
    async def get_candles(self, pair: Pair, timeframe: str, limit: int) -> list[MarketCandle]:
        """Return up to `limit` candles, oldest first."""
        ...
