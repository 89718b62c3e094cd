from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Protocol

from src.broker.simulated import DEFAULT_INITIAL_QUOTE, SimulatedVenue
from src.data.binance_public import BinancePublicMarketData
from src.db.repositories.bot_state import BotStateRepository
from src.domain.errors import ConfigError
from src.domain.models import MarketType, Pair
from src.ports.market import MarketDataPort, PricePort
from src.ports.trading import TradeExecutionPort

logger = logging.getLogger(__name__)


class VenueProvider(Protocol):
    def trader(self, *, bot_key: str, pair: Pair, market_type: MarketType, leverage: float) -> TradeExecutionPort: ...

    def pricer(self) -> PricePort: ...

    def market_data(self) -> MarketDataPort: ...


class SimulatedProvider:
    """
    Paper trading on live public prices.

    All simulated bots share one price feed, created on first use under a lock.
    """

    def __init__(
        self,
        *,
        state_repo: BotStateRepository | None = None,
        feed_factory: Callable[[], Any] = BinancePublicMarketData,
        initial_quote: float = DEFAULT_INITIAL_QUOTE,
    ):
        self.state_repo = state_repo
        self.initial_quote = float(initial_quote)
        self._feed_factory = feed_factory
        self._feed: Any | None = None
        self._feed_lock = threading.Lock()

    def _shared_feed(self) -> Any:
        if self._feed is None:
            with self._feed_lock:
                if self._feed is None:
                    self._feed = self._feed_factory()
                    logger.info("Created shared price feed for simulated venues")
        return self._feed

    def pricer(self) -> PricePort:
        return self._shared_feed()

    def market_data(self) -> MarketDataPort:
        return self._shared_feed()

    def trader(self, *, bot_key: str, pair: Pair, market_type: MarketType, leverage: float) -> TradeExecutionPort:
        return SimulatedVenue(
            pair=pair,
            market_type=market_type,
            pricer=self._shared_feed(),
            leverage=leverage,
            initial_quote=self.initial_quote,
            state_repo=self.state_repo,
            state_key=bot_key,
        )


_PROVIDERS: dict[str, Callable[..., VenueProvider]] = {
    "simulate": SimulatedProvider,
}

SUPPORTED_PLATFORMS = frozenset(_PROVIDERS)


def create_provider(platform: str, **kwargs: Any) -> VenueProvider:
    """Select the venue implementation once at startup."""
    key = str(platform or "").strip().lower()
    factory = _PROVIDERS.get(key)
    if factory is None:
        raise ConfigError(f"Unsupported platform {platform!r}; available: {', '.join(sorted(_PROVIDERS))}")
    return factory(**kwargs)
