import asyncio

import pytest

from src.db.repositories.bot_state import BotStateRepository
from src.db.repositories.trade_intents import TradeIntentRepository
from src.domain.errors import OrderNotFilledError, OrderRejectedError, TransientError
from src.domain.models import Action, IntentStatus, Pair, Position, PositionSide
from src.strategy.averaging import AveragingSettings, AveragingStrategy, drop_percent, rise_percent
from src.trading.executor import OrderExecutor
from src.trading.journal import TradeJournal
from tests.fakes import FakeFeed, FakeTrader, RecordingSleep, fast_retrier, make_db

PAIR = Pair("BTC", "USDT")


def _strategy(db, trader, feed, settings=None, *, fill_poll_attempts=2):
    executor = OrderExecutor(
        trader, fast_retrier(), fill_poll_interval=0.0, fill_poll_attempts=fill_poll_attempts, sleep=RecordingSleep()
    )
    return AveragingStrategy(
        bot_key="dca",
        pair=PAIR,
        settings=settings or AveragingSettings(amount_percent=10, max_dca_trades=15, buy_threshold_percent=3,
                                               sell_threshold_percent=7),
        trader=trader,
        pricer=feed,
        executor=executor,
        journal=TradeJournal(TradeIntentRepository(db), "dca"),
        state_repo=BotStateRepository(db),
    )


def _setup(tmp_path, price=100.0, quote=1000.0, settings=None):
    db = make_db(tmp_path)
    feed = FakeFeed(price=price)
    trader = FakeTrader(PAIR, feed, quote=quote)
    return db, feed, trader, _strategy(db, trader, feed, settings)


def test_percent_changes_are_exact_at_boundaries():
    assert drop_percent(100, 97) == 3
    assert rise_percent(100, 107) == 7
    assert drop_percent(0.3, 0.291) == 3


def test_initialize_flat_places_first_buy(tmp_path):
    _db, _feed, trader, strategy = _setup(tmp_path)
    asyncio.run(strategy.initialize())

    assert len(trader.orders) == 1
    (action, amount), = trader.orders.values()
    assert action == Action.BUY
    assert amount == pytest.approx(1.0)
    assert strategy.state.trade_count == 1
    assert strategy.state.reference_price == 100.0
    assert strategy.state.holding


def test_initialize_adopts_existing_position_without_trading(tmp_path):
    _db, feed, trader, strategy = _setup(tmp_path, price=120.0)
    trader.position = Position(PositionSide.LONG, 0.5, 110.0)

    asyncio.run(strategy.initialize())

    assert trader.orders == {}
    assert strategy.state.trade_count == 1
    assert strategy.state.reference_price == 120.0
    assert strategy.state.held_amount == 0.5


def test_initialize_does_not_adopt_a_short_position(tmp_path):
    _db, _feed, trader, strategy = _setup(tmp_path)
    trader.position = Position(PositionSide.SHORT, 0.5, 110.0)

    async def scenario():
        await strategy.initialize()
        return await strategy.trade()

    assert asyncio.run(scenario()) is None
    assert trader.orders == {}
    assert not strategy.state.holding
    assert strategy.state.trade_count == 0


def test_full_cycle_buy_on_drop_then_sell_on_rise(tmp_path):
    _db, feed, trader, strategy = _setup(tmp_path)

    async def scenario():
        await strategy.initialize()
        trader.balances["USDT"] = 1000.0

        feed.price = 96.0
        buy = await strategy.trade()
        assert buy is not None and buy.action == Action.BUY
        assert buy.amount == pytest.approx(1000 * 0.10 / 96)
        assert buy.price == 96.0
        assert strategy.state.trade_count == 2
        assert strategy.state.reference_price == 96.0

        feed.price = 103.0
        sell = await strategy.trade()
        assert sell is not None and sell.action == Action.SELL
        assert sell.amount == pytest.approx(1.0 + 1000 * 0.10 / 96)
        assert not strategy.state.holding
        assert strategy.state.trade_count == 0

    asyncio.run(scenario())


def test_threshold_boundaries_trigger_on_equality(tmp_path):
    _db, feed, trader, strategy = _setup(tmp_path)

    async def scenario():
        await strategy.initialize()
        feed.price = 97.01
        assert await strategy.trade() is None
        feed.price = 97.0
        assert (await strategy.trade()).action == Action.BUY

        feed.price = 103.78
        assert await strategy.trade() is None
        feed.price = 103.79
        assert (await strategy.trade()).action == Action.SELL

    asyncio.run(scenario())


def test_trade_count_never_exceeds_maximum(tmp_path):
    settings = AveragingSettings(amount_percent=10, max_dca_trades=3, buy_threshold_percent=1,
                                 sell_threshold_percent=50)
    _db, feed, trader, strategy = _setup(tmp_path, settings=settings)

    async def scenario():
        await strategy.initialize()
        for price in (90.0, 80.0, 70.0, 60.0, 50.0):
            feed.price = price
            await strategy.trade()

    asyncio.run(scenario())
    buys = [a for a, _ in trader.orders.values() if a == Action.BUY]
    assert len(buys) == 3
    assert strategy.state.trade_count == 3
    assert strategy.state.reference_price == 80.0


def test_flat_after_exit_does_not_reenter(tmp_path):
    _db, feed, trader, strategy = _setup(tmp_path)

    async def scenario():
        await strategy.initialize()
        feed.price = 110.0
        assert (await strategy.trade()).action == Action.SELL
        for price in (50.0, 100.0, 200.0):
            feed.price = price
            assert await strategy.trade() is None

    asyncio.run(scenario())
    assert len(trader.orders) == 2


def test_rejected_order_does_not_advance_state(tmp_path):
    db, feed, trader, strategy = _setup(tmp_path)

    async def scenario():
        await strategy.initialize()
        feed.price = 96.0
        trader.submit_error = OrderRejectedError("insufficient balance")
        with pytest.raises(OrderRejectedError):
            await strategy.trade()
        assert strategy.state.trade_count == 1
        assert strategy.state.reference_price == 100.0

        trader.submit_error = None
        event = await strategy.trade()
        assert event is not None and event.action == Action.BUY
        assert strategy.state.trade_count == 2

    asyncio.run(scenario())
    failed = [i for i in trader.submit_calls if TradeIntentRepository(db).get(i).status == IntentStatus.FAILED]
    assert len(failed) == 1


def test_retry_exhaustion_surfaces_error_and_keeps_state(tmp_path):
    _db, feed, trader, strategy = _setup(tmp_path)

    async def scenario():
        await strategy.initialize()
        feed.price = 96.0
        trader.fail_next_submits = 100
        with pytest.raises(TransientError):
            await strategy.trade()

    asyncio.run(scenario())
    assert strategy.state.trade_count == 1
    assert strategy.state.reference_price == 100.0
    assert len(trader.orders) == 1


def test_transient_submit_failures_reuse_the_same_client_order_id(tmp_path):
    _db, _feed, trader, strategy = _setup(tmp_path)
    trader.fail_next_submits = 2

    asyncio.run(strategy.initialize())

    assert len(trader.submit_calls) == 3
    assert len(set(trader.submit_calls)) == 1
    assert len(trader.orders) == 1


def test_unconfirmed_fill_is_reconciled_on_a_later_tick(tmp_path):
    _db, feed, trader, strategy = _setup(tmp_path)

    async def scenario():
        await strategy.initialize()
        feed.price = 96.0
        trader.report_unfilled = True
        with pytest.raises(OrderNotFilledError):
            await strategy.trade()
        assert strategy.state.trade_count == 1

        # Still unconfirmed: the tick is skipped and nothing new is submitted.
        assert await strategy.trade() is None
        assert len(trader.orders) == 2

        trader.report_unfilled = False
        await strategy.trade()
        assert strategy.state.trade_count == 2
        assert strategy.state.reference_price == 96.0

    asyncio.run(scenario())
    assert len(trader.orders) == 2


def test_restart_resumes_persisted_state(tmp_path):
    db, feed, trader, strategy = _setup(tmp_path)

    async def first_run():
        await strategy.initialize()
        feed.price = 96.0
        await strategy.trade()
        await strategy.close()

    asyncio.run(first_run())
    assert len(trader.orders) == 2

    restarted = _strategy(db, trader, feed)
    asyncio.run(restarted.initialize())

    assert len(trader.orders) == 2
    assert restarted.state.trade_count == 2
    assert restarted.state.reference_price == 96.0
    assert restarted.state.held_amount == pytest.approx(strategy.state.held_amount)


def test_startup_applies_fill_of_interrupted_submission_exactly_once(tmp_path):
    db, feed, trader, strategy = _setup(tmp_path)
    asyncio.run(strategy.initialize())

    # Crash between venue fill and local bookkeeping.
    journal = TradeJournal(TradeIntentRepository(db), "dca")
    intent = journal.prepare(Action.BUY, 0.5, 96.0)
    asyncio.run(trader.execute_action(Action.BUY, 0.5, intent.id))

    restarted = _strategy(db, trader, feed)
    asyncio.run(restarted.initialize())
    assert restarted.state.trade_count == 2
    assert restarted.state.reference_price == 96.0
    assert restarted.state.held_amount == pytest.approx(1.5)
    assert TradeIntentRepository(db).get(intent.id).status == IntentStatus.DONE

    again = _strategy(db, trader, feed)
    asyncio.run(again.initialize())
    assert again.state.trade_count == 2


def test_startup_marks_never_filled_intent_failed(tmp_path):
    db, feed, trader, strategy = _setup(tmp_path)
    asyncio.run(strategy.initialize())

    intent = TradeJournal(TradeIntentRepository(db), "dca").prepare(Action.BUY, 0.5, 96.0)

    restarted = _strategy(db, trader, feed)
    asyncio.run(restarted.initialize())
    assert restarted.state.trade_count == 1
    assert TradeIntentRepository(db).get(intent.id).status == IntentStatus.FAILED
