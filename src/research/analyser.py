from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any

import pandas as pd
import pandas_ta as ta

from src.domain.models import MarketCandle, Pair, Position

logger = logging.getLogger(__name__)

EMA_FAST = 20
EMA_SLOW = 50
RSI_LENGTH = 14
ATR_LENGTH = 14
VOLUME_WINDOW = 20


def candles_to_frame(candles: list[MarketCandle]) -> pd.DataFrame:
    """Candles (oldest first) as a DataFrame indexed by open time."""
    if not candles:
        return pd.DataFrame(columns=["open", "high", "low", "close", "volume"])
    df = pd.DataFrame(
        {
            "open_time": [c.open_time for c in candles],
            "open": [float(c.open) for c in candles],
            "high": [float(c.high) for c in candles],
            "low": [float(c.low) for c in candles],
            "close": [float(c.close) for c in candles],
            "volume": [float(c.volume) for c in candles],
        }
    )
    df.set_index("open_time", inplace=True)
    return df.sort_index()


def _round(value: Any, digits: int = 4) -> float | None:
    if value is None:
        return None
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(v) or math.isinf(v):
        return None
    return round(v, digits)


@dataclass(frozen=True)
class MarketContext:
    """Everything the decision prompt is rendered from."""

    pair: Pair
    price: float
    quote_balance: float
    primary: dict[str, Any]
    higher: dict[str, Any] | None = None
    recent_bars: list[dict[str, Any]] = field(default_factory=list)
    position: Position | None = None


class ResearchAnalyser:
    """Indicators (EMA, RSI, ATR via pandas_ta) and volume context on candle frames."""

    def apply_indicators(self, df: pd.DataFrame) -> pd.DataFrame:
        """Adds ema/rsi/atr columns; an indicator without enough bars is left as NaN."""
        if df.empty:
            return df
        out = df.copy()
        indicators = {
            f"ema_{EMA_FAST}": out.ta.ema(length=EMA_FAST),
            f"ema_{EMA_SLOW}": out.ta.ema(length=EMA_SLOW),
            f"rsi_{RSI_LENGTH}": out.ta.rsi(length=RSI_LENGTH),
            f"atr_{ATR_LENGTH}": out.ta.atr(length=ATR_LENGTH),
        }
        for column, series in indicators.items():
            # pandas_ta returns None when the frame is shorter than the length.
            out[column] = series if series is not None else float("nan")
        return out

    def analyse_volume(self, df: pd.DataFrame) -> dict[str, Any]:
        if df.empty or len(df) < 2:
            return {}
        volumes = df["volume"]
        baseline = volumes.iloc[-(VOLUME_WINDOW + 1):-1].mean()
        current = float(volumes.iloc[-1])
        ratio = current / baseline if baseline and baseline > 0 else None
        if ratio is None:
            label = "unknown"
        elif ratio >= 1.5:
            label = "high"
        elif ratio <= 0.5:
            label = "low"
        else:
            label = "normal"
        return {"current": _round(current), "average": _round(baseline), "ratio": _round(ratio, 2), "label": label}

    def summarise_timeframe(self, df: pd.DataFrame, timeframe: str) -> dict[str, Any]:
        """Latest indicator values for one timeframe, with a coarse trend label."""
        if df.empty:
            return {"timeframe": timeframe, "bars": 0}
        enriched = self.apply_indicators(df)
        latest = enriched.iloc[-1]
        price = float(latest["close"])
        ema_fast = _round(latest[f"ema_{EMA_FAST}"])
        ema_slow = _round(latest[f"ema_{EMA_SLOW}"])

        trend = "neutral"
        if ema_fast is not None and ema_slow is not None:
            if price > ema_fast > ema_slow:
                trend = "bullish"
            elif price < ema_fast < ema_slow:
                trend = "bearish"

        first_close = float(enriched["close"].iloc[0])
        change_pct = (price - first_close) / first_close * 100 if first_close > 0 else None

        return {
            "timeframe": timeframe,
            "bars": int(len(enriched)),
            "price": _round(price, 8),
            "ema_20": ema_fast,
            "ema_50": ema_slow,
            "rsi_14": _round(latest[f"rsi_{RSI_LENGTH}"], 2),
            "atr_14": _round(latest[f"atr_{ATR_LENGTH}"]),
            "change_pct": _round(change_pct, 2),
            "trend": trend,
            "volume": self.analyse_volume(enriched),
        }

    def recent_bars(self, df: pd.DataFrame, count: int = 10) -> list[dict[str, Any]]:
        rows = []
        for ts, row in df.tail(count).iterrows():
            rows.append(
                {
                    "time": ts.isoformat() if hasattr(ts, "isoformat") else str(ts),
                    "open": _round(row["open"], 8),
                    "high": _round(row["high"], 8),
                    "low": _round(row["low"], 8),
                    "close": _round(row["close"], 8),
                    "volume": _round(row["volume"]),
                }
            )
        return rows

    def build_market_context(
        self,
        *,
        pair: Pair,
        primary: pd.DataFrame,
        primary_timeframe: str,
        higher: pd.DataFrame | None,
        higher_timeframe: str,
        quote_balance: float,
        position: Position | None,
    ) -> MarketContext:
        price = float(primary["close"].iloc[-1]) if not primary.empty else 0.0
        higher_summary = None
        if higher is not None and not higher.empty:
            higher_summary = self.summarise_timeframe(higher, higher_timeframe)
        return MarketContext(
            pair=pair,
            price=price,
            quote_balance=float(quote_balance),
            primary=self.summarise_timeframe(primary, primary_timeframe),
            higher=higher_summary,
            recent_bars=self.recent_bars(primary),
            position=position if position is not None and position.is_open else None,
        )
