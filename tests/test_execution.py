import sys

sys.path.insert(0, '.')

import asyncio
import itertools
import logging
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from ingest.price_cache import PriceCache
from orchestration.events import ORDER_UPDATE, REFERENCE_PRICE_UPDATED, EventBus
from orchestration.persistence import PersistenceError
from strategy.execution import ExchangeRejection, OrderExecutor, VerificationFailure
from strategy.execution_types import BUY, SELL, Holdings, ReferencePrice, TradeRecord
from strategy.quantity import to_decimal
from strategy.simulators.paper import PaperExchange
from tests.fakes import InMemoryStore, RecordingNotifier


class UnfilledExchange(PaperExchange):
    async def place_market_order(self, symbol, side, quantity):
        ticket = await super().place_market_order(symbol, side, quantity)
        return replace(ticket, status='EXPIRED', fills=[])


class BaseFeeExchange(PaperExchange):
    """Charges a 0.1% buy commission in the base asset, as Binance does without BNB fee payment."""

    async def place_market_order(self, symbol, side, quantity):
        ticket = await super().place_market_order(symbol, side, quantity)
        if ticket.side != 'BUY':
            return ticket
        base = self._base_asset(symbol)
        fee = to_decimal(quantity) * Decimal('0.001')
        self._balances[base] -= fee
        fills = [replace(fill, commission=float(fee), commission_asset=base) for fill in ticket.fills]
        ticket = replace(ticket, fills=fills)
        self._orders[ticket.exchange_order_id] = ticket
        return ticket


class UnconfirmedExchange(PaperExchange):
    async def fetch_order(self, symbol, order_id):
        ticket = await super().fetch_order(symbol, order_id)
        return replace(ticket, status='PARTIALLY_FILLED')


def _setup(exchange_cls=PaperExchange, price=30000.0, balance=1000.0):
    cache = PriceCache(lambda: True)
    cache.update('BTCUSDT', price)
    exchange = exchange_cls(cache.get_price, quote_asset='USDT', quote_balance=balance)
    store = InMemoryStore()
    events = EventBus()
    seen = []
    events.subscribe_all(lambda event, payload: seen.append((event, payload)))
    notifier = RecordingNotifier()
    executor = OrderExecutor(
        exchange, store, events, notifier=notifier, buy_pct=0.05, sell_pct=0.05, quote_asset='USDT'
    )
    return executor, cache, exchange, store, seen, notifier


def test_buy_records_trade_and_opens_cycle():
    executor, cache, exchange, store, seen, notifier = _setup()

    result = asyncio.run(executor.execute_buy('BTCUSDT', 50.0, 30000.0))

    assert result.action == BUY
    assert result.recorded
    assert result.trade.quantity == pytest.approx(0.00166)
    assert result.trade.price == 30000.0
    assert len(store.trades) == 1
    ref = store.references['BTCUSDT']
    assert ref.first_transaction_price == 30000.0
    assert ref.next_buy_price == pytest.approx(28500.0)
    assert ref.next_sell_price == pytest.approx(31500.0)
    assert result.reference == ref
    # Balances refreshed from the exchange after the fill
    assert store.balances['BTC'] == pytest.approx(0.00166)
    assert store.balances['USDT'] == pytest.approx(1000.0 - 49.8)
    assert [event for event, _ in seen] == [ORDER_UPDATE, REFERENCE_PRICE_UPDATED]
    assert notifier.trades[0]['action'] == BUY
    assert notifier.trades[0]['quote_asset'] == 'USDT'


def test_sell_all_uses_trigger_price_for_next_buy():
    executor, cache, exchange, store, seen, notifier = _setup()

    async def run():
        await executor.execute_buy('BTCUSDT', 50.0, 30000.0)
        cache.update('BTCUSDT', 31600.0)
        return await executor.execute_sell_all('BTCUSDT', 31550.0)

    result = asyncio.run(run())
    assert result.action == SELL
    assert result.trade.quantity == pytest.approx(0.00166)
    # Executed at the live price, thresholds anchored on the trigger price
    assert result.trade.price == 31600.0
    ref = store.references['BTCUSDT']
    assert ref.first_transaction_price == 0
    assert ref.next_sell_price == 0
    assert ref.last_transaction_price == 31550.0
    assert ref.next_buy_price == pytest.approx(31550.0 * 0.95)
    holdings = asyncio.run(store.get_current_holdings('BTCUSDT'))
    assert holdings.quantity == 0


def test_unfilled_order_changes_nothing():
    executor, cache, exchange, store, seen, notifier = _setup(UnfilledExchange)

    with pytest.raises(VerificationFailure):
        asyncio.run(executor.execute_buy('BTCUSDT', 50.0, 30000.0))

    assert store.trades == []
    assert 'BTCUSDT' not in store.references
    assert seen == []


def test_status_query_must_confirm_fill():
    executor, cache, exchange, store, seen, notifier = _setup(UnconfirmedExchange)

    with pytest.raises(VerificationFailure) as excinfo:
        asyncio.run(executor.execute_buy('BTCUSDT', 50.0, 30000.0))

    assert excinfo.value.order_id == '1'
    assert store.trades == []


def test_exchange_rejection_on_insufficient_balance():
    executor, cache, exchange, store, seen, notifier = _setup(balance=10.0)

    with pytest.raises(ExchangeRejection):
        asyncio.run(executor.execute_buy('BTCUSDT', 50.0, 30000.0))

    assert store.trades == []


def test_sell_without_balance_is_rejected():
    executor, cache, exchange, store, seen, notifier = _setup()

    with pytest.raises(ExchangeRejection):
        asyncio.run(executor.execute_sell_all('BTCUSDT', 30000.0))


def test_duplicate_trade_id_is_recorded_once():
    executor, cache, exchange, store, seen, notifier = _setup()
    exchange._trade_ids = itertools.repeat(7)

    async def run():
        first = await executor.execute_buy('BTCUSDT', 50.0, 30000.0)
        cache.update('BTCUSDT', 28000.0)
        second = await executor.execute_buy('BTCUSDT', 50.0, 28000.0)
        return first, second

    first, second = asyncio.run(run())
    assert len(store.trades) == 1
    assert first.recorded and not second.recorded
    # The duplicate fill leaves the cycle where the first one put it
    assert second.reference.next_buy_price == pytest.approx(28500.0)
    assert second.reference.last_transaction_price == 30000.0


def test_balance_refresh_failure_keeps_trade():
    executor, cache, exchange, store, seen, notifier = _setup()
    store.fail_on.add('update_account_balances')

    result = asyncio.run(executor.execute_buy('BTCUSDT', 50.0, 30000.0))

    assert result.recorded
    assert len(store.trades) == 1
    assert store.references['BTCUSDT'].first_transaction_price == 30000.0
    assert store.balances == {}


def test_persistence_failure_after_fill_raises_and_alerts(caplog):
    executor, cache, exchange, store, seen, notifier = _setup()
    store.fail_on.add('record_trade')

    with caplog.at_level(logging.CRITICAL, logger='strategy.execution'):
        with pytest.raises(PersistenceError):
            asyncio.run(executor.execute_buy('BTCUSDT', 50.0, 30000.0))

    assert any(r.levelno == logging.CRITICAL for r in caplog.records)
    assert any('reconciliation' in message for message in notifier.errors)
    # The exchange did fill; only the bookkeeping is missing
    assert exchange.balances['BTC'] == pytest.approx(0.00166)
    assert seen == []


def test_threshold_update_failure_after_ledger_write_raises():
    executor, cache, exchange, store, seen, notifier = _setup()
    store.fail_on.add('mutate_reference_price')

    with pytest.raises(PersistenceError):
        asyncio.run(executor.execute_buy('BTCUSDT', 50.0, 30000.0))

    assert len(store.trades) == 1
    assert store.references.get('BTCUSDT', ReferencePrice('BTCUSDT')).first_transaction_price == 0


def test_notifier_failure_does_not_fail_trade():
    executor, cache, exchange, store, seen, notifier = _setup()
    notifier.fail = True

    result = asyncio.run(executor.execute_buy('BTCUSDT', 50.0, 30000.0))

    assert result.recorded
    assert len(store.trades) == 1


def test_base_asset_buy_fee_is_netted_and_sell_all_closes_position():
    executor, cache, exchange, store, seen, notifier = _setup(BaseFeeExchange, price=29000.0)

    async def run():
        buy = await executor.execute_buy('BTCUSDT', 50.0, 29000.0)
        cache.update('BTCUSDT', 31000.0)
        sell = await executor.execute_sell_all('BTCUSDT', 31000.0)
        return buy, sell

    buy, sell = asyncio.run(run())
    assert buy.order.executed_qty == pytest.approx(0.00172)
    assert buy.trade.quantity == pytest.approx(0.00172 * 0.999)
    # Only whole steps can be sold; the remainder stays on the exchange as dust
    assert sell.trade.quantity == pytest.approx(0.00171)
    assert exchange.balances['BTC'] > 0
    holdings = asyncio.run(store.get_current_holdings('BTCUSDT'))
    assert holdings.quantity == 0


def _ledger_row(action, quantity, price, trade_id):
    return TradeRecord(
        symbol='BTCUSDT',
        action=action,
        quantity=quantity,
        price=price,
        quote_amount=quantity * price,
        trade_time=datetime(2024, 1, 1, tzinfo=timezone.utc),
        exchange_trade_id=trade_id,
    )


def test_holdings_count_only_buys_since_last_sell():
    store = InMemoryStore()
    store.trades = [
        _ledger_row(BUY, 0.002, 29000.0, '1'),
        _ledger_row(SELL, 0.00199, 31000.0, '2'),
    ]
    assert asyncio.run(store.get_current_holdings('BTCUSDT')).quantity == 0

    store.trades.append(_ledger_row(BUY, 0.001, 30000.0, '3'))
    holdings = asyncio.run(store.get_current_holdings('BTCUSDT'))
    assert holdings.quantity == pytest.approx(0.001)
    assert holdings.total_bought == pytest.approx(0.003)


def test_holdings_without_cycle_boundary_fall_back_to_net_quantity():
    holdings = Holdings.from_totals('BTCUSDT', bought=0.003, sold=0.001, spent=90.0, received=31.0)
    assert holdings.quantity == pytest.approx(0.002)
    assert holdings.average_buy_price == pytest.approx(30000.0)
