from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

import requests

from src.domain.errors import MarketDataError, TransientError, UnsupportedInstrumentError
from src.domain.models import MarketCandle, Pair

logger = logging.getLogger(__name__)

BINANCE_API_URL = "https://api.binance.com"
REQUEST_TIMEOUT_SECONDS = 10
MAX_KLINES = 1000


class BinancePublicMarketData:
    """
    Prices and candles from Binance's public REST API (no credentials).

    Blocking `requests` calls run in a worker thread so they never stall the event loop.
    Implements both PricePort and MarketDataPort.
    """

    def __init__(self, base_url: str = BINANCE_API_URL, *, session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()

    def _get(self, path: str, params: dict[str, Any]) -> Any:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.get(url, params=params, timeout=REQUEST_TIMEOUT_SECONDS)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientError(f"Binance request failed: {e}") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientError(f"Binance returned HTTP {resp.status_code} for {path}")
        if resp.status_code == 400:
            raise UnsupportedInstrumentError(f"Binance rejected {params}: {resp.text[:200]}")
        if resp.status_code != 200:
            raise MarketDataError(f"Binance returned HTTP {resp.status_code} for {path}: {resp.text[:200]}")
        return resp.json()

    def _fetch_price(self, pair: Pair) -> float:
        doc = self._get("/api/v3/ticker/price", {"symbol": pair.symbol})
        try:
            return float(doc["price"])
        except (KeyError, TypeError, ValueError) as e:
            raise MarketDataError(f"Unexpected ticker payload for {pair}: {doc!r}") from e

    def _fetch_candles(self, pair: Pair, timeframe: str, limit: int) -> list[MarketCandle]:
        rows = self._get(
            "/api/v3/klines",
            {"symbol": pair.symbol, "interval": timeframe, "limit": max(1, min(int(limit), MAX_KLINES))},
        )
        if not isinstance(rows, list):
            raise MarketDataError(f"Unexpected klines payload for {pair}: {type(rows).__name__}")
        candles = []
        for r in rows:
            candles.append(
                MarketCandle(
                    open_time=datetime.fromtimestamp(int(r[0]) / 1000, tz=timezone.utc),
                    open=float(r[1]),
                    high=float(r[2]),
                    low=float(r[3]),
                    close=float(r[4]),
                    volume=float(r[5]),
                )
            )
        return candles

    async def get_price(self, pair: Pair) -> float:
        return await asyncio.to_thread(self._fetch_price, pair)

    async def get_candles(self, pair: Pair, timeframe: str, limit: int) -> list[MarketCandle]:
        return await asyncio.to_thread(self._fetch_candles, pair, timeframe, limit)
