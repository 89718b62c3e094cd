from __future__ import annotations

import asyncio
import logging
import signal
import sys
from enum import Enum
from typing import Awaitable, Callable

from src.broker.providers import VenueProvider, create_provider
from src.db.repositories.balances import BalanceSnapshotRepository
from src.db.repositories.bot_state import BotStateRepository
from src.db.repositories.trades import TradeRepository
from src.db.sqlite import SQLiteDatabase
from src.domain.models import TradeEvent
from src.ports.decisions import DecisionService
from src.strategy.base import TradingStrategy
from src.strategy.factory import BotComponents, build_bot
from src.trader.snapshots import snapshot_balances
from src.utils.config_loader import Settings, load_settings

logger = logging.getLogger(__name__)

TradeCallback = Callable[[TradeEvent], Awaitable[None]]


class BotState(str, Enum):
    CREATED = "created"
    INITIALIZED = "initialized"
    RUNNING = "running"
    STOPPED = "stopped"


class TradingBot:
    """
    Drives one strategy on a fixed-period schedule.

    Ticks run strictly one at a time. The schedule is anchored on the event loop clock;
    when a tick overruns one or more periods, the missed boundaries are skipped rather
    than replayed back to back.
    """

    def __init__(
        self,
        name: str,
        strategy: TradingStrategy,
        poll_interval: float,
        on_trade: TradeCallback | None = None,
    ):
        if poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        self.name = name
        self.strategy = strategy
        self.poll_interval = float(poll_interval)
        self.on_trade = on_trade
        self.state = BotState.CREATED
        self.ticks = 0

    async def initialize(self) -> None:
        # Failures propagate: a bot that cannot initialise must not run.
        await self.strategy.initialize()
        self.state = BotState.INITIALIZED
        logger.info(f"[{self.name}] initialized ({self.strategy.name} strategy, every {self.poll_interval}s)")

    async def run(self) -> None:
        """Tick until cancelled, then close the strategy."""
        if self.state == BotState.CREATED:
            await self.initialize()
        loop = asyncio.get_running_loop()
        self.state = BotState.RUNNING
        try:
            next_at = loop.time()
            while True:
                await self._tick()
                next_at += self.poll_interval
                now = loop.time()
                if next_at <= now:
                    skipped = int((now - next_at) // self.poll_interval) + 1
                    logger.warning(f"[{self.name}] tick overran; skipping {skipped} scheduled run(s)")
                    next_at += skipped * self.poll_interval
                await asyncio.sleep(next_at - now)
        finally:
            await self._close()

    async def _tick(self) -> None:
        self.ticks += 1
        try:
            event = await self.strategy.trade()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self.name}] tick {self.ticks} failed: {type(e).__name__}: {e}")
            return

        if event is None:
            logger.debug(f"[{self.name}] tick {self.ticks}: nothing to do")
            return

        logger.info(f"[{self.name}] trade executed: {event.to_dict()}")
        if self.on_trade is not None:
            try:
                await self.on_trade(event)
            except Exception as e:
                logger.error(f"[{self.name}] post-trade hook failed: {e}")

    async def _close(self) -> None:
        try:
            await self.strategy.close()
        except Exception as e:
            logger.error(f"[{self.name}] strategy close failed: {type(e).__name__}: {e}")
        finally:
            self.state = BotState.STOPPED
            logger.info(f"[{self.name}] stopped after {self.ticks} tick(s)")


def _trade_recorder(
    bot_key: str,
    components: BotComponents,
    trades: TradeRepository,
    balances: BalanceSnapshotRepository,
) -> TradeCallback:
    async def on_trade(event: TradeEvent) -> None:
        try:
            trades.record(bot_key, event)
        except Exception as e:
            logger.error(f"[{bot_key}] failed to record trade: {e}")
        await snapshot_balances(
            bot_key=bot_key,
            pair=event.pair,
            trader=components.trader,
            pricer=components.pricer,
            repo=balances,
        )

    return on_trade


def build_bots(
    settings: Settings,
    db: SQLiteDatabase,
    *,
    decision_service: DecisionService | None = None,
    providers: dict[str, VenueProvider] | None = None,
) -> list[TradingBot]:
    """Construct one TradingBot per configured bot. Venue providers are shared per platform."""
    providers = {} if providers is None else providers
    state_repo = BotStateRepository(db)
    trades = TradeRepository(db)
    balances = BalanceSnapshotRepository(db)

    bots: list[TradingBot] = []
    for bot_cfg in settings.bots:
        provider = providers.get(bot_cfg.platform)
        if provider is None:
            provider = create_provider(bot_cfg.platform, state_repo=state_repo)
            providers[bot_cfg.platform] = provider
        components = build_bot(
            bot_cfg, settings=settings, provider=provider, db=db, decision_service=decision_service
        )
        bots.append(
            TradingBot(
                bot_cfg.name,
                components.strategy,
                bot_cfg.poll_interval_seconds,
                on_trade=_trade_recorder(bot_cfg.name, components, trades, balances),
            )
        )
    return bots


async def run_bots(settings: Settings, *, decision_service: DecisionService | None = None) -> None:
    """Initialise every bot (any failure aborts startup), then run them until cancelled."""
    db = SQLiteDatabase(settings.app.database_path)
    try:
        db.init_schema()
        bots = build_bots(settings, db, decision_service=decision_service)
        for bot in bots:
            await bot.initialize()
        logger.info(f"Starting {len(bots)} bot(s): {', '.join(b.name for b in bots)}")
        async with asyncio.TaskGroup() as tg:
            for bot in bots:
                tg.create_task(bot.run(), name=f"bot:{bot.name}")
    finally:
        db.close()


async def _serve(settings: Settings) -> None:
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, task.cancel)
        except (NotImplementedError, RuntimeError):
            # Not available on this platform; Ctrl+C still raises KeyboardInterrupt.
            pass
    await run_bots(settings)


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    try:
        settings = load_settings()
    except Exception as e:
        logger.error(f"Invalid configuration: {e}")
        return 1
    logging.getLogger().setLevel(settings.app.log_level)

    try:
        asyncio.run(_serve(settings))
    except (asyncio.CancelledError, KeyboardInterrupt):
        logger.info("Shutdown requested; bots stopped")
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
