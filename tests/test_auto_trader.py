import sys

sys.path.insert(0, '.')

import asyncio
from dataclasses import replace

import pytest

from ingest.binance_rest import BinanceAPIError
from ingest.price_cache import PriceCache
from orchestration.events import (
    AUTO_TRADING_CHECK,
    AUTO_TRADING_EXECUTED,
    AUTO_TRADING_STATUS,
    PRICE_UPDATE,
    EventBus,
)
from orchestration.persistence import PersistenceError
from orchestration.state import ConnectionState, FeedStatus
from strategy.auto_trader import AutoTradingEngine, TradingUnavailable
from strategy.execution import OrderExecutor
from strategy.execution_types import BUY, SELL, ReferencePrice
from strategy.simulators.paper import PaperExchange
from tests.fakes import InMemoryStore, RecordingNotifier


class LostStatusExchange(PaperExchange):
    async def fetch_order(self, symbol, order_id):
        raise BinanceAPIError(503, -1001, 'Internal error; unable to process your request.', '')


class ExpiringExchange(PaperExchange):
    async def place_market_order(self, symbol, side, quantity):
        ticket = await super().place_market_order(symbol, side, quantity)
        return replace(ticket, status='EXPIRED', fills=[])


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _connected_state(auto=True):
    state = ConnectionState(auto_trading_enabled=auto)
    state.transition(FeedStatus.CONNECTING)
    state.transition(FeedStatus.CONNECTED)
    state.set_api_connected(True)
    return state


def _setup(auto=True, reference=None, quote_balance=1000.0, exchange_cls=PaperExchange):
    state = _connected_state(auto)
    cache = PriceCache(lambda: state.connected)
    exchange = exchange_cls(cache.get_price, quote_asset='USDT', quote_balance=quote_balance)
    store = InMemoryStore()
    store.balances = {'USDT': quote_balance}
    if reference is not None:
        store.references['BTCUSDT'] = reference
    events = EventBus()
    seen = []
    events.subscribe_all(lambda event, payload: seen.append((event, payload)))
    notifier = RecordingNotifier()
    executor = OrderExecutor(exchange, store, events, notifier=notifier, buy_pct=0.05, sell_pct=0.05, quote_asset='USDT')
    clock = Clock()
    engine = AutoTradingEngine(
        state,
        store,
        executor,
        events,
        cache=cache,
        notifier=notifier,
        symbols=['BTCUSDT', 'SOLUSDT'],
        investment_amount=50.0,
        additional_purchase_amount=50.0,
        check_interval_s=10,
        cooldown_s=180,
        quote_asset='USDT',
        clock=clock,
    )
    return engine, cache, store, seen, notifier, clock


def _after_sell(last=31000.0):
    return ReferencePrice('BTCUSDT', 0.0, last, last * 0.95, 0.0)


def _evaluate(engine, cache, symbol, price):
    cache.update(symbol, price)
    return asyncio.run(engine.evaluate(symbol, price))


def test_full_cycle_buy_cooldown_accumulate_sell():
    engine, cache, store, seen, notifier, clock = _setup(reference=_after_sell())

    assert _evaluate(engine, cache, 'BTCUSDT', 29000.0) == BUY
    ref = store.references['BTCUSDT']
    assert ref.first_transaction_price == 29000.0
    assert ref.next_sell_price == pytest.approx(30450.0)
    assert engine.in_cooldown('BTCUSDT')

    # Past the throttle but inside the cooldown: silently skipped
    clock.advance(15)
    assert _evaluate(engine, cache, 'BTCUSDT', 27000.0) is None
    assert len(store.trades) == 1

    clock.advance(200)
    assert _evaluate(engine, cache, 'BTCUSDT', 27000.0) == BUY
    ref = store.references['BTCUSDT']
    assert ref.first_transaction_price == 29000.0
    assert ref.next_sell_price == pytest.approx(30450.0)
    assert ref.next_buy_price == pytest.approx(27000.0 * 0.95)

    clock.advance(200)
    assert _evaluate(engine, cache, 'BTCUSDT', 31000.0) == SELL
    ref = store.references['BTCUSDT']
    assert ref.first_transaction_price == 0
    assert ref.next_sell_price == 0
    assert ref.next_buy_price == pytest.approx(31000.0 * 0.95)
    holdings = asyncio.run(store.get_current_holdings('BTCUSDT'))
    assert holdings.quantity == 0
    assert len(store.trades) == 3

    executed = [payload['action'] for event, payload in seen if event == AUTO_TRADING_EXECUTED]
    assert executed == [BUY, BUY, SELL]
    assert all(trade.automated for trade in store.trades)


def test_check_event_published_when_nothing_crosses():
    engine, cache, store, seen, notifier, clock = _setup(reference=_after_sell())

    assert _evaluate(engine, cache, 'BTCUSDT', 30000.0) == 'none'
    checks = [payload for event, payload in seen if event == AUTO_TRADING_CHECK]
    assert checks[0]['action'] is None
    assert checks[0]['next_buy_price'] == pytest.approx(29450.0)
    assert store.trades == []


def test_all_zero_reference_never_trades():
    engine, cache, store, seen, notifier, clock = _setup()
    assert _evaluate(engine, cache, 'BTCUSDT', 1.0) == 'none'
    assert store.trades == []


def test_throttle_skips_second_check_within_interval():
    engine, cache, store, seen, notifier, clock = _setup(reference=_after_sell())
    assert _evaluate(engine, cache, 'BTCUSDT', 30000.0) == 'none'
    clock.advance(5)
    assert _evaluate(engine, cache, 'BTCUSDT', 29000.0) is None
    clock.advance(6)
    assert _evaluate(engine, cache, 'BTCUSDT', 29000.0) == BUY


def test_guards_short_circuit():
    engine, cache, store, seen, notifier, clock = _setup(auto=False, reference=_after_sell())
    assert _evaluate(engine, cache, 'BTCUSDT', 29000.0) is None

    engine.state.auto_trading_enabled = True
    engine.state.set_api_connected(False)
    assert _evaluate(engine, cache, 'BTCUSDT', 29000.0) is None

    engine.state.set_api_connected(True)
    engine._active.add('BTCUSDT')
    assert _evaluate(engine, cache, 'BTCUSDT', 29000.0) is None

    assert asyncio.run(engine.evaluate('ETHUSDT', 1.0)) is None
    assert store.trades == []
    assert seen == []


def test_concurrent_ticks_run_one_evaluation():
    engine, cache, store, seen, notifier, clock = _setup(reference=_after_sell())
    cache.update('BTCUSDT', 29000.0)
    engine.check_interval_s = 0

    async def run():
        return await asyncio.gather(*(engine.evaluate('BTCUSDT', 29000.0) for _ in range(5)))

    outcomes = asyncio.run(run())
    assert outcomes.count(BUY) == 1
    assert outcomes.count(None) == 4
    assert len(store.trades) == 1


def test_failure_keeps_auto_trading_on_and_skips_cooldown():
    engine, cache, store, seen, notifier, clock = _setup(reference=_after_sell())
    engine.executor.transport.set_balance('USDT', 10.0)

    assert _evaluate(engine, cache, 'BTCUSDT', 29000.0) == 'failed'
    assert engine.state.auto_trading_enabled
    assert not engine.in_cooldown('BTCUSDT')
    assert not engine.is_active('BTCUSDT')
    assert not engine.is_held('BTCUSDT')
    assert notifier.errors
    assert not [e for e, _ in seen if e == AUTO_TRADING_EXECUTED]


def test_price_updates_spawn_evaluations():
    engine, cache, store, seen, notifier, clock = _setup(reference=_after_sell())
    engine.events.subscribe(PRICE_UPDATE, engine.on_price)

    async def run():
        sample = cache.update('BTCUSDT', 29000.0)
        await engine.events.publish(PRICE_UPDATE, sample)
        await engine.drain()

    asyncio.run(run())
    assert len(store.trades) == 1


def test_set_enabled_requires_trading_and_broadcasts():
    engine, cache, store, seen, notifier, clock = _setup(auto=False)
    engine.state.set_api_connected(False)

    assert asyncio.run(engine.set_enabled(True)) is False
    assert engine.state.auto_trading_enabled is False

    engine.state.set_api_connected(True)
    assert asyncio.run(engine.set_enabled(True)) is True
    assert asyncio.run(engine.set_enabled(False)) is False

    statuses = [payload for event, payload in seen if event == AUTO_TRADING_STATUS]
    assert [s['enabled'] for s in statuses] == [False, True, False]
    assert 'trading disabled' in statuses[0]['reason']


def test_manual_first_purchase_opens_cycle():
    engine, cache, store, seen, notifier, clock = _setup(auto=False)
    cache.update('BTCUSDT', 30000.0)

    result = asyncio.run(engine.execute_manual('BTCUSDT', 'buy'))

    assert result.action == BUY
    assert not result.trade.automated
    assert store.references['BTCUSDT'].next_sell_price == pytest.approx(31500.0)
    assert engine.in_cooldown('BTCUSDT')
    with pytest.raises(TradingUnavailable):
        asyncio.run(engine.execute_manual('BTCUSDT', SELL))


def test_manual_trade_validation():
    engine, cache, store, seen, notifier, clock = _setup()
    cache.update('BTCUSDT', 30000.0)

    with pytest.raises(ValueError):
        asyncio.run(engine.execute_manual('BTCUSDT', 'HOLD'))
    with pytest.raises(ValueError):
        asyncio.run(engine.execute_manual('ETHUSDT', BUY))

    engine.state.set_api_connected(False)
    with pytest.raises(TradingUnavailable):
        asyncio.run(engine.execute_manual('BTCUSDT', BUY))
    assert store.trades == []


def test_snapshot_reports_cooldowns():
    engine, cache, store, seen, notifier, clock = _setup(reference=_after_sell())
    _evaluate(engine, cache, 'BTCUSDT', 29000.0)
    clock.advance(60)
    snap = engine.snapshot()
    assert snap['active'] == []
    assert snap['cooldowns'] == {'BTCUSDT': 120.0}


def test_unbooked_fill_holds_symbol_until_released():
    engine, cache, store, seen, notifier, clock = _setup(reference=_after_sell())
    exchange = engine.executor.transport
    store.fail_on.add('mutate_reference_price')

    outcomes = []
    for _ in range(3):
        outcomes.append(_evaluate(engine, cache, 'BTCUSDT', 29000.0))
        clock.advance(11)

    assert outcomes == ['failed', None, None]
    # The reference row never moved, yet only one live order went out
    assert len(exchange._orders) == 1
    assert engine.is_held('BTCUSDT')
    assert 'BTCUSDT' in engine.snapshot()['held']
    with pytest.raises(TradingUnavailable):
        asyncio.run(engine.execute_manual('BTCUSDT', BUY))

    # Still held once the cooldown has long passed
    clock.advance(500)
    assert _evaluate(engine, cache, 'BTCUSDT', 29000.0) is None
    assert len(exchange._orders) == 1

    store.fail_on.clear()
    assert engine.release('BTCUSDT') is True
    assert engine.release('BTCUSDT') is False
    assert _evaluate(engine, cache, 'BTCUSDT', 29000.0) == BUY
    assert len(exchange._orders) == 2


def test_unknown_order_outcome_holds_symbol():
    engine, cache, store, seen, notifier, clock = _setup(reference=_after_sell(), exchange_cls=LostStatusExchange)

    assert _evaluate(engine, cache, 'BTCUSDT', 29000.0) == 'failed'
    assert engine.is_held('BTCUSDT')
    assert store.trades == []

    clock.advance(200)
    assert _evaluate(engine, cache, 'BTCUSDT', 29000.0) is None
    assert len(engine.executor.transport._orders) == 1


def test_order_that_did_not_fill_is_not_held():
    engine, cache, store, seen, notifier, clock = _setup(reference=_after_sell(), exchange_cls=ExpiringExchange)

    assert _evaluate(engine, cache, 'BTCUSDT', 29000.0) == 'failed'
    assert not engine.is_held('BTCUSDT')
    assert not engine.in_cooldown('BTCUSDT')

    clock.advance(11)
    assert _evaluate(engine, cache, 'BTCUSDT', 29000.0) == 'failed'
    assert len(engine.executor.transport._orders) == 2


def test_manual_trade_with_unbooked_fill_holds_symbol():
    engine, cache, store, seen, notifier, clock = _setup(auto=False)
    cache.update('BTCUSDT', 30000.0)
    store.fail_on.add('record_trade')

    with pytest.raises(PersistenceError):
        asyncio.run(engine.execute_manual('BTCUSDT', BUY))

    assert engine.is_held('BTCUSDT')
    assert engine.in_cooldown('BTCUSDT')
