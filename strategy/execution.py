import logging
import time
from typing import Any, Optional, Tuple

from api.metrics import metrics
from config import config
from orchestration.events import ORDER_UPDATE, REFERENCE_PRICE_UPDATED, EventBus
from orchestration.persistence import PersistenceError
from strategy.execution_types import BUY, SELL, OrderTicket, ReferencePrice, TradeRecord, TradeResult, utc_from_ms
from strategy.quantity import format_quantity, to_decimal
from strategy.reference_cycle import apply_buy, apply_sell_all
from strategy.transports.binance import BinanceAPIError, TransientNetworkError


logger = logging.getLogger(__name__)

THRESHOLD_FIELDS = ("first_transaction_price", "last_transaction_price", "next_buy_price", "next_sell_price")


class ExchangeRejection(Exception):
    """The order was refused or could not be sized; nothing was recorded."""

    def __init__(self, symbol: str, action: str, message: str):
        self.symbol = symbol
        self.action = action
        super().__init__(f"{action} {symbol} rejected: {message}")


class VerificationFailure(Exception):
    """
    The exchange did not confirm a complete fill; nothing was recorded.

    ``may_have_filled`` is False only when the exchange answered with a
    non-filled status. Otherwise the order may have executed and the
    symbol needs reconciliation before it trades again.
    """

    def __init__(
        self,
        symbol: str,
        action: str,
        message: str,
        order_id: Optional[str] = None,
        may_have_filled: bool = True,
    ):
        self.symbol = symbol
        self.action = action
        self.order_id = order_id
        self.may_have_filled = may_have_filled
        super().__init__(f"{action} {symbol} unverified (order {order_id}): {message}")


class UnrecordedFill(PersistenceError):
    """The order filled on the exchange but its bookkeeping did not commit."""

    def __init__(self, trade: TradeRecord, order: OrderTicket, cause: PersistenceError):
        self.trade = trade
        self.order = order
        self.symbol = trade.symbol
        super().__init__(cause.operation, cause.cause)


class OrderExecutor:
    """
    Market-order execution with verification and bookkeeping.

    A trade counts as committed once the fill is confirmed twice (order
    response and an independent status query), the ledger row is written,
    and the reference-price transaction has committed. Orders are never
    resubmitted here. Failures after commit (balance refresh, observers,
    notifications) are logged and do not undo the trade.
    """

    def __init__(
        self,
        transport: Any,
        store: Any,
        events: EventBus,
        notifier: Any = None,
        buy_pct: Optional[float] = None,
        sell_pct: Optional[float] = None,
        quote_asset: Optional[str] = None,
    ):
        trading = config.section('trading')
        self.transport = transport
        self.store = store
        self.events = events
        self.notifier = notifier
        self.buy_pct = float(trading.get('buy_threshold_pct', 0.05) if buy_pct is None else buy_pct)
        self.sell_pct = float(trading.get('sell_threshold_pct', 0.05) if sell_pct is None else sell_pct)
        self.quote_asset = quote_asset or config.section('exchange').get('quote_asset', 'USDT')

    def base_asset(self, symbol: str) -> str:
        if symbol.endswith(self.quote_asset):
            return symbol[: -len(self.quote_asset)]
        return symbol

    async def execute_buy(
        self,
        symbol: str,
        quote_amount: float,
        trigger_price: float,
        automated: bool = True,
    ) -> TradeResult:
        if quote_amount <= 0:
            raise ExchangeRejection(symbol, BUY, f"quote amount must be positive, got {quote_amount}")
        raw_qty = to_decimal(quote_amount) / to_decimal(trigger_price)
        return await self._execute(symbol, BUY, raw_qty, trigger_price, automated)

    async def execute_sell_all(self, symbol: str, trigger_price: float, automated: bool = True) -> TradeResult:
        try:
            balances = await self.transport.fetch_balances()
        except (BinanceAPIError, TransientNetworkError) as exc:
            metrics.record_trade_failure('balance_lookup')
            raise ExchangeRejection(symbol, SELL, f"balance lookup failed: {exc}") from exc
        available = balances.get(self.base_asset(symbol), 0.0)
        if available <= 0:
            metrics.record_trade_failure('no_balance')
            raise ExchangeRejection(symbol, SELL, f"no free {self.base_asset(symbol)} balance")
        return await self._execute(symbol, SELL, to_decimal(available), trigger_price, automated, available=available)

    async def _execute(
        self,
        symbol: str,
        side: str,
        raw_qty,
        trigger_price: float,
        automated: bool,
        available: Optional[float] = None,
    ) -> TradeResult:
        started = time.monotonic()
        order = await self._submit(symbol, side, raw_qty, trigger_price, available)
        await self._verify(symbol, side, order)
        latency = time.monotonic() - started

        executed_price = order.average_price
        gross_qty = order.executed_qty or sum(f.quantity for f in order.fills)
        trade = TradeRecord(
            symbol=symbol,
            action=side,
            quantity=self._ledger_quantity(symbol, side, gross_qty, order),
            price=executed_price,
            quote_amount=order.quote_qty or executed_price * gross_qty,
            trade_time=utc_from_ms(order.transact_time),
            exchange_trade_id=order.trade_id,
            automated=automated,
        )

        reference, recorded = await self._commit(trade, order, trigger_price)
        metrics.record_trade(side, latency)
        logger.info(
            "%s %s %s @ %.8f (order %s, trigger %.8f)",
            side,
            trade.quantity,
            symbol,
            executed_price,
            order.id,
            trigger_price,
        )

        await self._refresh_balances()

        result = TradeResult(
            symbol=symbol,
            action=side,
            trade=trade,
            order=order,
            reference=reference,
            trigger_price=trigger_price,
            recorded=recorded,
            automated=automated,
        )
        await self.events.publish(ORDER_UPDATE, result)
        await self.events.publish(REFERENCE_PRICE_UPDATED, reference)
        await self._notify_trade(result)
        return result

    async def _submit(self, symbol: str, side: str, raw_qty, trigger_price: float, available: Optional[float]) -> OrderTicket:
        try:
            filters = await self.transport.fetch_symbol_filters(symbol)
            quantity = format_quantity(raw_qty, trigger_price, filters)
        except (BinanceAPIError, TransientNetworkError, ValueError) as exc:
            metrics.record_trade_failure('sizing')
            raise ExchangeRejection(symbol, side, f"cannot size order: {exc}") from exc

        if available is not None and to_decimal(quantity) > to_decimal(available):
            metrics.record_trade_failure('dust')
            raise ExchangeRejection(
                symbol, side, f"free balance {available} is below the exchange minimum order {quantity}"
            )

        try:
            return await self.transport.place_market_order(symbol, side, quantity)
        except BinanceAPIError as exc:
            metrics.record_trade_failure('rejected')
            raise ExchangeRejection(symbol, side, f"code={exc.code} msg={exc.msg}") from exc
        except TransientNetworkError as exc:
            # The request may have reached the exchange; do not guess
            metrics.record_trade_failure('submit_unknown')
            raise VerificationFailure(symbol, side, f"order submission outcome unknown: {exc}") from exc

    async def _verify(self, symbol: str, side: str, order: OrderTicket) -> None:
        if not order.is_filled:
            metrics.record_trade_failure('not_filled')
            raise VerificationFailure(symbol, side, f"status {order.status}", order.id, may_have_filled=False)
        if not order.fills or order.average_price is None:
            metrics.record_trade_failure('no_fills')
            raise VerificationFailure(symbol, side, "response carries no fill details", order.id)
        if order.exchange_order_id is None:
            metrics.record_trade_failure('no_order_id')
            raise VerificationFailure(symbol, side, "response carries no order id", order.id)

        try:
            confirmed = await self.transport.fetch_order(symbol, order.exchange_order_id)
        except (BinanceAPIError, TransientNetworkError) as exc:
            metrics.record_trade_failure('confirm_failed')
            raise VerificationFailure(symbol, side, f"status query failed: {exc}", order.id) from exc
        if not confirmed.is_filled:
            metrics.record_trade_failure('confirm_not_filled')
            raise VerificationFailure(symbol, side, f"status query returned {confirmed.status}", order.id)

    async def _commit(self, trade: TradeRecord, order: OrderTicket, trigger_price: float) -> Tuple[ReferencePrice, bool]:
        symbol = trade.symbol
        try:
            recorded = await self.store.record_trade(trade)
            if recorded:
                committed = await self.store.mutate_reference_price(symbol, self._transition(trade, trigger_price))
            else:
                logger.warning(
                    "Trade %s for %s already in ledger; reference prices left unchanged",
                    trade.exchange_trade_id,
                    symbol,
                )
                committed = None
        except PersistenceError as exc:
            await self._reconciliation_alert(trade, order, exc)
            raise UnrecordedFill(trade, order, exc) from exc

        try:
            reference = await self.store.get_reference_price(symbol)
        except PersistenceError as exc:
            if committed is None:
                raise
            logger.error("Re-reading %s reference prices failed, using committed values: %s", symbol, exc)
            return committed, recorded

        if committed is not None and _thresholds(reference) != _thresholds(committed):
            logger.warning(
                "%s reference prices changed between commit and re-read: committed=%s persisted=%s",
                symbol,
                _thresholds(committed),
                _thresholds(reference),
            )
        return reference, recorded

    def _ledger_quantity(self, symbol: str, side: str, gross_qty: float, order: OrderTicket) -> float:
        """Base quantity that actually landed in the account; buy fees charged in the base asset are netted out."""
        if side != BUY:
            return gross_qty
        base = self.base_asset(symbol)
        fee = sum(f.commission for f in order.fills if f.commission_asset == base)
        return max(0.0, gross_qty - fee)

    def _transition(self, trade: TradeRecord, trigger_price: float):
        if trade.action == BUY:
            return lambda current: apply_buy(current, trade.price, self.buy_pct, self.sell_pct)
        return lambda current: apply_sell_all(current, trigger_price, self.buy_pct)

    async def _refresh_balances(self) -> None:
        try:
            balances = await self.transport.fetch_balances()
            await self.store.update_account_balances(balances)
        except (BinanceAPIError, TransientNetworkError, PersistenceError) as exc:
            logger.error("Balance refresh after trade failed: %s", exc)

    async def _notify_trade(self, result: TradeResult) -> None:
        if self.notifier is None:
            return
        info = result.trade.to_dict()
        info['quote_asset'] = self.quote_asset
        info['reference'] = result.reference.to_dict()
        try:
            await self.notifier.send_trade_notification(info)
        except Exception:
            metrics.record_notification_failure()
            logger.exception("Trade notification failed for %s", result.symbol)

    async def _reconciliation_alert(self, trade: TradeRecord, order: OrderTicket, exc: Exception) -> None:
        metrics.record_trade_failure('persistence')
        logger.critical(
            "%s %s executed on exchange (order %s, trade %s, qty %s @ %s) but bookkeeping failed: %s. "
            "Manual reconciliation required.",
            trade.action,
            trade.symbol,
            order.id,
            trade.exchange_trade_id,
            trade.quantity,
            trade.price,
            exc,
        )
        if self.notifier is None:
            return
        try:
            await self.notifier.send_error_notification(
                f"{trade.action} {trade.symbol} filled (order {order.id}) but was not recorded: {exc}. "
                "Manual reconciliation required."
            )
        except Exception:
            logger.exception("Reconciliation notification failed")


def _thresholds(reference: ReferencePrice):
    return tuple(getattr(reference, name) for name in THRESHOLD_FIELDS)
