from __future__ import annotations

import logging
from dataclasses import dataclass

from src.broker.providers import VenueProvider
from src.data.retrieval import MarketData
from src.db.repositories.bot_state import BotStateRepository
from src.db.repositories.decisions import DecisionLogRepository
from src.db.repositories.trade_intents import TradeIntentRepository
from src.db.sqlite import SQLiteDatabase
from src.domain.errors import ConfigError
from src.ports.decisions import DecisionService
from src.ports.market import PricePort
from src.ports.trading import TradeExecutionPort
from src.research.ai_researcher import AIResearcher, LLMClient
from src.strategy.averaging import AveragingStrategy
from src.strategy.base import TradingStrategy
from src.strategy.signal_driven import SignalDrivenStrategy
from src.trading.executor import OrderExecutor
from src.trading.journal import TradeJournal
from src.utils.config_loader import BotConfig, Settings
from src.utils.retry import Retrier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BotComponents:
    strategy: TradingStrategy
    trader: TradeExecutionPort
    pricer: PricePort


def build_bot(
    bot: BotConfig,
    *,
    settings: Settings,
    provider: VenueProvider,
    db: SQLiteDatabase,
    decision_service: DecisionService | None = None,
) -> BotComponents:
    """Wire one configured bot: venue ports, executor, journal and the chosen strategy."""
    trader = provider.trader(bot_key=bot.name, pair=bot.pair, market_type=bot.market_type, leverage=bot.leverage)
    pricer = provider.pricer()
    retrier = Retrier(settings.app.retry)
    executor = OrderExecutor(
        trader,
        retrier,
        fill_poll_interval=settings.app.fill_poll_interval_seconds,
        fill_poll_attempts=settings.app.fill_poll_attempts,
    )
    journal = TradeJournal(TradeIntentRepository(db), bot.name)

    if bot.strategy == "averaging":
        if bot.averaging is None:
            raise ConfigError(f"{bot.name}: missing averaging settings")
        strategy: TradingStrategy = AveragingStrategy(
            bot_key=bot.name,
            pair=bot.pair,
            settings=bot.averaging,
            trader=trader,
            pricer=pricer,
            executor=executor,
            journal=journal,
            state_repo=BotStateRepository(db),
        )
    elif bot.strategy == "signal":
        if bot.signal is None:
            raise ConfigError(f"{bot.name}: missing signal settings")
        service = decision_service or LLMClient(
            settings.ai.model,
            timeout_seconds=settings.ai.timeout_seconds,
            max_tokens=settings.ai.max_tokens,
        )
        researcher = AIResearcher(service, Retrier(settings.ai.retry), config={"ai": settings.ai.raw})
        strategy = SignalDrivenStrategy(
            bot_key=bot.name,
            pair=bot.pair,
            market_type=bot.market_type,
            settings=bot.signal,
            trader=trader,
            market_data=MarketData(provider.market_data(), retrier),
            researcher=researcher,
            executor=executor,
            journal=journal,
            decision_log=DecisionLogRepository(db),
        )
    else:
        raise ConfigError(f"{bot.name}: unknown strategy {bot.strategy!r}")

    logger.info(f"Built {bot.strategy} bot {bot.name} for {bot.pair} on {bot.platform} ({bot.market_type.value})")
    return BotComponents(strategy=strategy, trader=trader, pricer=pricer)
