from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from src.db.repositories.bot_state import BotStateRepository
from src.domain.errors import OrderNotFilledError
from src.domain.models import Action, AveragingState, Pair, PositionSide, TradeEvent, TradeIntent
from src.ports.market import PricePort
from src.ports.trading import TradeExecutionPort
from src.trading.executor import OrderExecutor
from src.trading.journal import TradeJournal
from src.trading.reconcile import reconcile_pending
from src.trading.sizing import allocate

logger = logging.getLogger(__name__)

# Processed intent ids kept in state to make fill application idempotent.
_PROCESSED_HISTORY = 100


@dataclass(frozen=True)
class AveragingSettings:
    amount_percent: float = 10.0
    max_dca_trades: int = 15
    buy_threshold_percent: float = 1.0
    sell_threshold_percent: float = 7.0


def _dec(value: float) -> Decimal:
    return Decimal(str(value))


def drop_percent(reference: float, price: float) -> Decimal:
    ref = _dec(reference)
    return (ref - _dec(price)) / ref * 100


def rise_percent(reference: float, price: float) -> Decimal:
    ref = _dec(reference)
    return (_dec(price) - ref) / ref * 100


class AveragingStrategy:
    """
    Dollar-cost averaging on a single pair.

    Flat -> Holding(1) happens only in `initialize`. While holding, a drop of at least the
    buy threshold from the reference price adds to the position (up to `max_dca_trades`
    buy-ins) and moves the reference to the fill price; a rise of at least the sell
    threshold sells everything and returns to Flat. Once flat, ticks do nothing until the
    process is restarted.
    """

    name = "averaging"

    def __init__(
        self,
        *,
        bot_key: str,
        pair: Pair,
        settings: AveragingSettings,
        trader: TradeExecutionPort,
        pricer: PricePort,
        executor: OrderExecutor,
        journal: TradeJournal,
        state_repo: BotStateRepository,
    ):
        self.bot_key = bot_key
        self.pair = pair
        self.settings = settings
        self.trader = trader
        self.pricer = pricer
        self.executor = executor
        self.retrier = executor.retrier
        self.journal = journal
        self.state_repo = state_repo
        self.state: AveragingState | None = None

    def _require_state(self) -> AveragingState:
        if self.state is None:
            raise RuntimeError(f"{self.bot_key}: strategy used before initialize()")
        return self.state

    def _save(self) -> None:
        self.state_repo.save(self.bot_key, self._require_state().to_dict())

    async def _price(self) -> float:
        return float(
            await self.retrier.execute(lambda: self.pricer.get_price(self.pair), description=f"price {self.pair}")
        )

    async def initialize(self) -> None:
        stored = self.state_repo.load(self.bot_key)
        self.state = AveragingState.from_dict(stored) if stored else AveragingState()

        await reconcile_pending(self.journal, self.executor, wait=True, apply=self._apply_fill)

        state = self.state
        if state.holding:
            logger.info(
                f"[{self.bot_key}] resuming: trades={state.trade_count} ref={state.reference_price} "
                f"held={state.held_amount}"
            )
            return

        position = await self.retrier.execute(
            lambda: self.trader.get_position(self.pair), description=f"position {self.pair}"
        )
        price = await self._price()

        if position is not None and position.is_open and position.side != PositionSide.LONG:
            logger.warning(
                f"[{self.bot_key}] venue holds a {position.side.value} position qty={position.quantity}; "
                f"averaging only manages longs, staying flat"
            )
            return

        if position is not None and position.is_open:
            state.trade_count = 1
            state.reference_price = price
            state.holding = True
            state.held_amount = float(position.quantity)
            self._save()
            logger.info(f"[{self.bot_key}] adopted existing position qty={position.quantity} ref={price}")
            return

        event = await self._buy(price)
        if event is None:
            logger.warning(f"[{self.bot_key}] initial buy skipped (no price or no quote balance); staying flat")
        else:
            logger.info(f"[{self.bot_key}] initial buy {event.amount:.8f} {self.pair.base} at {event.price}")

    async def trade(self) -> TradeEvent | None:
        state = self._require_state()

        settled = await reconcile_pending(self.journal, self.executor, wait=False, apply=self._apply_fill)
        if not settled:
            return None

        if not state.holding:
            return None

        price = await self._price()
        if price <= 0:
            return None

        if state.reference_price <= 0:
            state.reference_price = price
            self._save()
            return None

        if (
            drop_percent(state.reference_price, price) >= _dec(self.settings.buy_threshold_percent)
            and state.trade_count < self.settings.max_dca_trades
        ):
            return await self._buy(price)

        if rise_percent(state.reference_price, price) >= _dec(self.settings.sell_threshold_percent):
            return await self._sell(price)

        return None

    async def _buy(self, price: float) -> TradeEvent | None:
        if price <= 0:
            return None
        balance = await self.retrier.execute(
            lambda: self.trader.get_balance(self.pair.quote), description=f"balance {self.pair.quote}"
        )
        _value, amount = allocate(float(balance), price, self.settings.amount_percent)
        if amount <= 0:
            return None
        return await self._execute(Action.BUY, amount, price)

    async def _sell(self, price: float) -> TradeEvent | None:
        amount = self._require_state().held_amount
        if amount <= 0:
            logger.warning(f"[{self.bot_key}] sell threshold reached but held amount is {amount}; skipping")
            return None
        return await self._execute(Action.SELL, amount, price)

    async def _execute(self, action: Action, amount: float, price: float) -> TradeEvent:
        intent = self.journal.prepare(action, amount, price)
        try:
            filled = await self.executor.submit(action, amount, intent.id)
        except OrderNotFilledError:
            logger.warning(f"[{self.bot_key}] {action.value} {intent.id} not confirmed yet; will reconcile")
            raise
        except Exception as e:
            self.journal.mark_failed(intent.id, f"{type(e).__name__}: {e}")
            raise

        filled = filled if filled > 0 else amount
        self._apply_fill(intent, filled)
        self.journal.mark_done(intent.id)
        return TradeEvent(action=action, pair=self.pair, amount=filled, price=price, client_order_id=intent.id)

    def _apply_fill(self, intent: TradeIntent, filled: float) -> None:
        state = self._require_state()
        if intent.id in state.processed_intents:
            return

        if intent.action == Action.BUY:
            state.trade_count += 1
            state.reference_price = intent.price
            state.holding = True
            state.held_amount += filled
        elif intent.action == Action.SELL:
            state.reset()

        state.processed_intents.append(intent.id)
        del state.processed_intents[:-_PROCESSED_HISTORY]
        self._save()

    async def close(self) -> None:
        if self.state is not None:
            self._save()
        logger.info(f"[{self.bot_key}] averaging strategy closed")
