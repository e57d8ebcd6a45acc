import sys

sys.path.insert(0, '.')

import asyncio

import pytest

from main import TradingBot
from orchestration.persistence import PersistenceError
from orchestration.events import AUTO_TRADING_STATUS, REFERENCE_PRICE_UPDATED
from strategy.auto_trader import TradingUnavailable
from strategy.execution_types import BUY, SELL
from strategy.simulators.paper import PaperExchange
from tests.fakes import FakeConnector, InMemoryStore, RecordingNotifier, wait_for_condition


def _bot():
    connector = FakeConnector()
    bot = TradingBot(store=InMemoryStore(), notifier=RecordingNotifier(), connector=connector)
    return bot, connector


def test_bot_defaults_to_paper_exchange():
    bot, _ = _bot()
    assert bot.paper_mode
    assert isinstance(bot.transport, PaperExchange)
    assert 'BTCUSDT' in bot.feed.symbols
    assert bot.state.auto_trading_enabled is False


def test_manual_cycle_through_bot_surface():
    bot, connector = _bot()
    seen = []
    bot.events.subscribe_all(lambda event, payload: seen.append((event, payload)))

    async def run():
        await bot.initialize()
        assert bot.state.api_connected
        assert bot.store.balances['USDT'] == 1000.0

        with pytest.raises(TradingUnavailable):
            await bot.first_purchase('BTCUSDT')

        await bot.feed.connect()
        assert await bot.set_auto_trading(True) is True
        connector.current.push_ticker('BTCUSDT', 30000.0)
        await wait_for_condition(lambda: 'BTCUSDT' in bot.cache.snapshot())
        # All-zero reference: the auto path never buys on its own
        await bot.engine.drain()
        assert bot.store.trades == []

        buy = await bot.first_purchase('BTCUSDT')
        bot.engine._last_trade.clear()
        bot.cache.update('BTCUSDT', 31600.0)
        sell = await bot.sell_all('BTCUSDT')

        reference = await bot.set_reference_price('BTCUSDT', next_buy_price=29000.0)
        history = await bot.trading_history('BTCUSDT')
        status = await bot.status()

        bot.running = True
        await bot.stop()
        return buy, sell, reference, history, status

    buy, sell, reference, history, status = asyncio.run(run())
    assert buy.action == BUY and sell.action == SELL
    assert reference.next_buy_price == 29000.0
    assert [t.action for t in history] == [SELL, BUY]
    assert status['mode'] == 'paper'
    assert status['symbols']['BTCUSDT']['holdings']['quantity'] == 0
    assert status['connection']['auto_trading_enabled'] is True
    assert bot.store.closed
    assert [p['enabled'] for e, p in seen if e == AUTO_TRADING_STATUS] == [True]
    assert (REFERENCE_PRICE_UPDATED, reference) in seen


def test_disabling_auto_trading_cancels_pending_restore():
    bot, connector = _bot()

    async def run():
        await bot.initialize()
        await bot.feed.connect()
        await bot.set_auto_trading(True)
        await bot.set_auto_trading(False)
        restore_cancelled = bot.feed._restore_cancelled
        await bot.feed.close()
        return restore_cancelled

    assert asyncio.run(run()) is True
    assert bot.state.auto_trading_enabled is False


def test_reference_override_lifts_reconciliation_hold():
    bot, connector = _bot()

    async def run():
        await bot.initialize()
        await bot.feed.connect()
        connector.current.push_ticker('BTCUSDT', 30000.0)
        await wait_for_condition(lambda: 'BTCUSDT' in bot.cache.snapshot())

        bot.store.fail_on.add('record_trade')
        with pytest.raises(PersistenceError):
            await bot.first_purchase('BTCUSDT')
        held = bot.engine.is_held('BTCUSDT')

        bot.store.fail_on.clear()
        await bot.set_reference_price('BTCUSDT', first_transaction_price=30000.0, next_sell_price=31500.0)
        released = not bot.engine.is_held('BTCUSDT')
        await bot.feed.close()
        return held, released

    held, released = asyncio.run(run())
    assert held and released
    assert bot.release_symbol('BTCUSDT') is False
