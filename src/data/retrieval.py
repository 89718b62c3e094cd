from __future__ import annotations

import logging
from dataclasses import dataclass

import pandas as pd

from src.domain.errors import MarketDataError, TransientError
from src.domain.models import Pair
from src.ports.market import MarketDataPort
from src.research.analyser import candles_to_frame
from src.utils.retry import Retrier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MarketSnapshot:
    primary: pd.DataFrame
    higher: pd.DataFrame | None

    @property
    def price(self) -> float:
        return float(self.primary["close"].iloc[-1])


class MarketData:
    """Fetches bounded candle windows for the primary and higher timeframes."""

    def __init__(self, source: MarketDataPort, retrier: Retrier):
        self.source = source
        self.retrier = retrier

    async def fetch_candles(self, pair: Pair, timeframe: str, limit: int) -> pd.DataFrame:
        candles = await self.retrier.execute(
            lambda: self.source.get_candles(pair, timeframe, limit),
            description=f"candles {pair} {timeframe}",
        )
        # Bound to the lookback even if the source returned more.
        return candles_to_frame(list(candles)[-limit:])

    async def snapshot(
        self,
        pair: Pair,
        *,
        primary_timeframe: str,
        primary_lookback: int,
        higher_timeframe: str,
        higher_lookback: int,
    ) -> MarketSnapshot:
        primary = await self.fetch_candles(pair, primary_timeframe, primary_lookback)
        if primary.empty:
            raise MarketDataError(f"No {primary_timeframe} candles for {pair}")

        try:
            higher = await self.fetch_candles(pair, higher_timeframe, higher_lookback)
        except (MarketDataError, TransientError) as e:
            logger.warning(f"Higher timeframe {higher_timeframe} unavailable for {pair}, continuing without it: {e}")
            higher = None

        return MarketSnapshot(primary=primary, higher=higher)
