import asyncio
import json

import pytest

from src.broker.simulated import SimulatedVenue
from src.data.retrieval import MarketData
from src.db.repositories.decisions import DecisionLogRepository
from src.db.repositories.trade_intents import TradeIntentRepository
from src.domain.errors import ConfigError, DecisionServiceError, MarketDataError
from src.domain.models import Action, Decision, IntentStatus, MarketType, Pair, Position, PositionSide
from src.research.ai_researcher import AIResearcher
from src.strategy.signal_driven import SignalDrivenStrategy, SignalSettings, clamp_leverage, resolve_action
from src.trading.executor import OrderExecutor
from src.trading.journal import TradeJournal
from tests.fakes import FakeDecisionService, FakeFeed, FakeTrader, RecordingSleep, fast_retrier, make_candles, make_db

PAIR = Pair("ETH", "USDT")


def _reply(**kw) -> str:
    return json.dumps(kw)


def _open_long(risk=10, leverage=None, sl=95.0, tp=110.0) -> str:
    return _reply(
        action="open_long",
        risk_percent=risk,
        leverage=leverage,
        reasoning="breakout",
        exit_plan={"stop_loss_price": sl, "take_profit_price": tp},
    )


class _BrokenLog:
    def append(self, record) -> None:
        raise RuntimeError("disk full")


def _build(tmp_path, service, *, settings=None, market_type=MarketType.MARGIN, decision_log=None, quote=1000.0):
    db = make_db(tmp_path)
    feed = FakeFeed(
        price=100.0,
        candles={"3m": make_candles([100.0] * 60), "15m": make_candles([100.0] * 60, minutes=15)},
    )
    trader = FakeTrader(PAIR, feed, quote=quote)
    executor = OrderExecutor(trader, fast_retrier(), fill_poll_interval=0.0, fill_poll_attempts=2,
                             sleep=RecordingSleep())
    strategy = SignalDrivenStrategy(
        bot_key="sig",
        pair=PAIR,
        market_type=market_type,
        settings=settings or SignalSettings(max_leverage=5),
        trader=trader,
        market_data=MarketData(feed, fast_retrier()),
        researcher=AIResearcher(service, fast_retrier(max_retries=1)),
        executor=executor,
        journal=TradeJournal(TradeIntentRepository(db), "sig"),
        decision_log=decision_log if decision_log is not None else DecisionLogRepository(db),
    )
    return db, feed, trader, strategy


def _run(strategy):
    async def go():
        await strategy.initialize()
        return await strategy.trade()

    return asyncio.run(go())


@pytest.mark.parametrize(
    "hint,expected",
    [(None, 1.0), (0.2, 1.0), (1.0, 1.0), (3.5, 3.5), (10.0, 5.0), (500.0, 5.0)],
)
def test_clamp_leverage(hint, expected):
    assert clamp_leverage(hint, 5.0) == expected


def test_clamp_leverage_uses_default_when_no_hint():
    assert clamp_leverage(None, 10.0, default=2.0) == 2.0
    assert clamp_leverage(None, 3.0, default=8.0) == 3.0


def test_spot_market_is_rejected_at_construction(tmp_path):
    with pytest.raises(ConfigError):
        _build(tmp_path, FakeDecisionService(), market_type=MarketType.SPOT)


@pytest.mark.parametrize(
    "label,action,side,expected",
    [
        ("open_long", Action.BUY, PositionSide.FLAT, (Action.BUY, False)),
        ("open_short", Action.SELL, PositionSide.FLAT, (Action.SELL, False)),
        ("close_long", Action.SELL, PositionSide.LONG, (Action.SELL, True)),
        ("close_short", Action.BUY, PositionSide.SHORT, (Action.BUY, True)),
        ("close", Action.SELL, PositionSide.SHORT, (Action.BUY, True)),
        ("sell", Action.SELL, PositionSide.LONG, (Action.SELL, True)),
        ("open_long", Action.BUY, PositionSide.LONG, None),
        ("buy", Action.BUY, PositionSide.LONG, None),
        ("close_long", Action.SELL, PositionSide.FLAT, None),
        ("close_long", Action.SELL, PositionSide.SHORT, None),
    ],
)
def test_resolve_action(label, action, side, expected):
    position = None if side == PositionSide.FLAT else Position(side, 1.0, 100.0)
    plan = resolve_action(Decision(action=action, label=label, risk_percent=5), position)
    if expected is None:
        assert plan is None
    else:
        assert (plan.action, plan.closing) == expected


def test_hold_never_trades():
    assert resolve_action(Decision.hold("nothing"), None) is None


def test_open_long_is_sized_by_risk_and_leverage_and_sets_stops(tmp_path):
    _db, _feed, trader, strategy = _build(tmp_path, FakeDecisionService([_open_long(risk=10, leverage=3)]))

    event = _run(strategy)

    assert event is not None and event.action == Action.BUY
    # margin 1000 * 10% = 100, notional 300 at price 100.
    assert event.amount == pytest.approx(3.0)
    assert trader.stops == [(110.0, 95.0)]
    assert trader.leverage_calls == [3.0]


def test_leverage_hint_above_maximum_is_clamped(tmp_path):
    _db, _feed, _trader, strategy = _build(tmp_path, FakeDecisionService([_open_long(risk=10, leverage=50)]))

    event = _run(strategy)

    assert event.amount == pytest.approx(5.0)


def test_close_long_sells_whole_position_without_stops(tmp_path):
    _db, _feed, trader, strategy = _build(tmp_path, FakeDecisionService([_reply(action="close_long")]))
    trader.position = Position(PositionSide.LONG, 2.5, 90.0)

    event = _run(strategy)

    assert event.action == Action.SELL
    assert event.amount == pytest.approx(2.5)
    assert trader.stops == []
    assert trader.leverage_calls == []
    assert trader.position is None


def test_opening_same_side_again_is_a_hold(tmp_path):
    _db, _feed, trader, strategy = _build(tmp_path, FakeDecisionService([_open_long()]))
    trader.position = Position(PositionSide.LONG, 1.0, 100.0)

    assert _run(strategy) is None
    assert trader.orders == {}


def test_malformed_reply_is_a_hold_and_is_logged(tmp_path):
    db, _feed, trader, strategy = _build(tmp_path, FakeDecisionService(["definitely not json"]))

    assert _run(strategy) is None
    assert trader.orders == {}
    rows = DecisionLogRepository(db).recent()
    assert len(rows) == 1
    assert rows.iloc[0]["action"] == "hold"


def test_decision_is_recorded_with_clamped_leverage(tmp_path):
    db, _feed, _trader, strategy = _build(tmp_path, FakeDecisionService([_open_long(leverage=9)]))

    _run(strategy)

    row = DecisionLogRepository(db).recent().iloc[0]
    assert row["action"] == "open_long"
    assert row["model"] == "test-model"
    assert row["leverage"] == 5.0
    assert row["position_side"] == "flat"


def test_stop_failure_still_returns_the_trade(tmp_path):
    _db, _feed, trader, strategy = _build(tmp_path, FakeDecisionService([_open_long()]))
    trader.stops_error = RuntimeError("stops not supported")

    event = _run(strategy)

    assert event is not None and event.action == Action.BUY
    assert len(trader.orders) == 1


def test_decision_log_failure_does_not_block_trading(tmp_path):
    _db, _feed, trader, strategy = _build(tmp_path, FakeDecisionService([_open_long()]), decision_log=_BrokenLog())

    event = _run(strategy)

    assert event is not None
    assert len(trader.orders) == 1


def test_decision_service_exhaustion_fails_the_tick_without_trading(tmp_path):
    service = FakeDecisionService(error=DecisionServiceError("timeout"))
    _db, _feed, trader, strategy = _build(tmp_path, service)

    with pytest.raises(DecisionServiceError):
        _run(strategy)
    assert service.calls == 2
    assert trader.orders == {}


def test_missing_higher_timeframe_is_tolerated(tmp_path):
    _db, feed, trader, strategy = _build(tmp_path, FakeDecisionService([_open_long()]))
    feed.candle_errors["15m"] = MarketDataError("no data")

    event = _run(strategy)

    assert event is not None
    assert len(trader.orders) == 1


def test_missing_primary_candles_fail_the_tick(tmp_path):
    _db, feed, trader, strategy = _build(tmp_path, FakeDecisionService([_open_long()]))
    feed.candles["3m"] = []

    with pytest.raises(MarketDataError):
        _run(strategy)
    assert trader.orders == {}


def test_candle_requests_are_bounded_by_lookback(tmp_path):
    settings = SignalSettings(primary_lookback=55, higher_lookback=25, max_leverage=5)
    _db, feed, _trader, strategy = _build(tmp_path, FakeDecisionService(), settings=settings)

    _run(strategy)

    assert ("3m", 55) in feed.candle_calls
    assert ("15m", 25) in feed.candle_calls


def test_leverage_hint_above_venue_leverage_is_applied_by_the_venue(tmp_path):
    db = make_db(tmp_path)
    feed = FakeFeed(
        price=100.0,
        candles={"3m": make_candles([100.0] * 60), "15m": make_candles([100.0] * 60, minutes=15)},
    )
    venue = SimulatedVenue(pair=PAIR, market_type=MarketType.MARGIN, pricer=feed, leverage=1, initial_quote=1000.0)
    strategy = SignalDrivenStrategy(
        bot_key="sig",
        pair=PAIR,
        market_type=MarketType.MARGIN,
        settings=SignalSettings(max_leverage=10),
        trader=venue,
        market_data=MarketData(feed, fast_retrier()),
        researcher=AIResearcher(FakeDecisionService([_open_long(risk=12, leverage=10)]), fast_retrier(max_retries=1)),
        executor=OrderExecutor(venue, fast_retrier(), fill_poll_interval=0.0, fill_poll_attempts=2,
                               sleep=RecordingSleep()),
        journal=TradeJournal(TradeIntentRepository(db), "sig"),
    )

    event = _run(strategy)

    # margin 1000 * 12% = 120, notional 1200 at 10x.
    assert event is not None and event.amount == pytest.approx(12.0)
    assert venue.position.leverage == 10.0
    assert venue.wallet["USDT"] == pytest.approx(880.0)
    assert TradeIntentRepository(db).get(event.client_order_id).status == IntentStatus.DONE
