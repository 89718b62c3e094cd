from __future__ import annotations

import logging
from dataclasses import dataclass

from src.data.retrieval import MarketData
from src.domain.errors import ConfigError, OrderNotFilledError
from src.domain.models import (
    Action,
    Decision,
    DecisionRecord,
    MarketType,
    Pair,
    Position,
    PositionSide,
    TradeEvent,
)
from src.ports.decisions import DecisionLog
from src.ports.trading import TradeExecutionPort
from src.research.ai_researcher import AIResearcher
from src.research.analyser import ResearchAnalyser
from src.trading.executor import OrderExecutor
from src.trading.journal import TradeJournal
from src.trading.reconcile import reconcile_pending
from src.trading.sizing import allocate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignalSettings:
    primary_timeframe: str = "3m"
    primary_lookback: int = 50
    higher_timeframe: str = "15m"
    higher_lookback: int = 60
    max_leverage: float = 10.0
    # Used when the model gives no leverage hint.
    default_leverage: float = 1.0


def clamp_leverage(hint: float | None, max_leverage: float, default: float = 1.0) -> float:
    """Leverage actually used for sizing: the hint (or default) bounded to [1, max_leverage]."""
    cap = max(1.0, float(max_leverage))
    if hint is None:
        hint = default
    return min(max(float(hint), 1.0), cap)


@dataclass(frozen=True)
class _Plan:
    action: Action
    closing: bool


_OPEN_LABELS = {"open_long", "open_short"}
_CLOSE_LABELS = {"close_long", "close_short", "close"}


def resolve_action(decision: Decision, position: Position | None) -> _Plan | None:
    """
    Map a decision onto the current venue position.

    flat + BUY opens a long, flat + SELL opens a short, long + SELL closes the long,
    short + BUY closes the short. Adding to an open side is treated as HOLD, as are
    labels that contradict the position (close_long while flat, open_* while open).
    """
    if decision.is_hold:
        return None
    side = position.side if position is not None and position.is_open else PositionSide.FLAT
    label = decision.label

    if side == PositionSide.FLAT:
        if label in _CLOSE_LABELS:
            return None
        return _Plan(decision.action, closing=False)

    if label in _OPEN_LABELS:
        return None
    if label == "close":
        return _Plan(Action.SELL if side == PositionSide.LONG else Action.BUY, closing=True)
    if label == "close_long" and side != PositionSide.LONG:
        return None
    if label == "close_short" and side != PositionSide.SHORT:
        return None

    if side == PositionSide.LONG and decision.action == Action.SELL:
        return _Plan(Action.SELL, closing=True)
    if side == PositionSide.SHORT and decision.action == Action.BUY:
        return _Plan(Action.BUY, closing=True)
    return None


class SignalDrivenStrategy:
    """
    LLM-driven margin strategy.

    The venue position is the source of truth; the strategy keeps no bookkeeping of its own
    beyond the trade journal. Sizing: margin = quote_balance * risk_percent / 100, notional =
    margin * leverage, with leverage clamped to [1, max_leverage] and set on the venue before
    the opening order.
    """

    name = "signal"

    def __init__(
        self,
        *,
        bot_key: str,
        pair: Pair,
        market_type: MarketType,
        settings: SignalSettings,
        trader: TradeExecutionPort,
        market_data: MarketData,
        researcher: AIResearcher,
        executor: OrderExecutor,
        journal: TradeJournal,
        analyser: ResearchAnalyser | None = None,
        decision_log: DecisionLog | None = None,
    ):
        if market_type != MarketType.MARGIN:
            raise ConfigError(f"{bot_key}: the signal strategy trades margin pairs only (got {market_type.value})")
        if settings.max_leverage < 1:
            raise ConfigError(f"{bot_key}: max_leverage must be >= 1")
        self.bot_key = bot_key
        self.pair = pair
        self.settings = settings
        self.trader = trader
        self.market_data = market_data
        self.researcher = researcher
        self.executor = executor
        self.retrier = executor.retrier
        self.journal = journal
        self.analyser = analyser or ResearchAnalyser()
        self.decision_log = decision_log

    async def initialize(self) -> None:
        await reconcile_pending(self.journal, self.executor, wait=True)
        quote = await self.retrier.execute(
            lambda: self.trader.get_balance(self.pair.quote), description=f"balance {self.pair.quote}"
        )
        position = await self._position()
        if position is not None:
            logger.info(
                f"[{self.bot_key}] existing {position.side.value} position qty={position.quantity} "
                f"entry={position.entry_price}; the model will evaluate it on the next tick"
            )
        logger.info(f"[{self.bot_key}] signal strategy ready, {self.pair.quote} balance={quote}")

    async def _position(self) -> Position | None:
        position = await self.retrier.execute(
            lambda: self.trader.get_position(self.pair), description=f"position {self.pair}"
        )
        return position if position is not None and position.is_open else None

    async def trade(self) -> TradeEvent | None:
        if not await reconcile_pending(self.journal, self.executor, wait=False):
            return None

        snapshot = await self.market_data.snapshot(
            self.pair,
            primary_timeframe=self.settings.primary_timeframe,
            primary_lookback=self.settings.primary_lookback,
            higher_timeframe=self.settings.higher_timeframe,
            higher_lookback=self.settings.higher_lookback,
        )
        price = snapshot.price
        if price <= 0:
            return None

        quote_balance = float(
            await self.retrier.execute(
                lambda: self.trader.get_balance(self.pair.quote), description=f"balance {self.pair.quote}"
            )
        )
        position = await self._position()

        context = self.analyser.build_market_context(
            pair=self.pair,
            primary=snapshot.primary,
            primary_timeframe=self.settings.primary_timeframe,
            higher=snapshot.higher,
            higher_timeframe=self.settings.higher_timeframe,
            quote_balance=quote_balance,
            position=position,
        )
        decision = await self.researcher.decide(context)
        leverage = clamp_leverage(decision.leverage, self.settings.max_leverage, self.settings.default_leverage)
        self._record_decision(decision, leverage, price, quote_balance, position)

        plan = resolve_action(decision, position)
        if plan is None:
            if not decision.is_hold:
                side = position.side.value if position else "flat"
                logger.info(f"[{self.bot_key}] {decision.label} ignored while {side}")
            return None

        if plan.closing:
            amount = float(position.quantity) if position else 0.0
        else:
            if not self._stops_consistent(plan.action, decision):
                logger.warning(
                    f"[{self.bot_key}] exit plan sl={decision.stop_loss} tp={decision.take_profit} "
                    f"does not fit a {plan.action.value} entry; holding"
                )
                return None
            _value, amount = allocate(quote_balance, price, decision.risk_percent, leverage)
        if amount <= 0:
            return None

        if not plan.closing:
            await self.retrier.execute(
                lambda: self.trader.set_leverage(self.pair, leverage), description=f"leverage {self.pair}"
            )
        event = await self._execute(plan.action, amount, price)

        if not plan.closing and (decision.stop_loss or decision.take_profit):
            try:
                await self.retrier.execute(
                    lambda: self.trader.set_position_stops(self.pair, decision.take_profit, decision.stop_loss),
                    description=f"stops {self.pair}",
                )
            except Exception as e:
                logger.error(f"[{self.bot_key}] position opened but setting stops failed: {e}")
        return event

    @staticmethod
    def _stops_consistent(action: Action, decision: Decision) -> bool:
        if decision.stop_loss is None or decision.take_profit is None:
            return True
        if action == Action.BUY:
            return decision.stop_loss < decision.take_profit
        return decision.stop_loss > decision.take_profit

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
        self.journal.mark_done(intent.id)
        filled = filled if filled > 0 else amount
        return TradeEvent(action=action, pair=self.pair, amount=filled, price=price, client_order_id=intent.id)

    def _record_decision(
        self,
        decision: Decision,
        leverage: float,
        price: float,
        quote_balance: float,
        position: Position | None,
    ) -> None:
        if self.decision_log is None:
            return
        record = DecisionRecord(
            pair=str(self.pair),
            model=self.researcher.model,
            action=decision.label,
            reasoning=decision.reasoning,
            price=price,
            quote_balance=quote_balance,
            risk_percent=decision.risk_percent,
            leverage=leverage,
            stop_loss=decision.stop_loss,
            take_profit=decision.take_profit,
            position_side=position.side.value if position else PositionSide.FLAT.value,
            position_amount=float(position.quantity) if position else 0.0,
        )
        try:
            self.decision_log.append(record)
        except Exception as e:
            logger.error(f"[{self.bot_key}] failed to record AI decision: {e}")

    async def close(self) -> None:
        logger.info(f"[{self.bot_key}] signal strategy closed")
