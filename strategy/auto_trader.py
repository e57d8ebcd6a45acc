import asyncio
import logging
import time
from typing import Any, Callable, Dict, Iterable, Optional, Set

from api.metrics import metrics
from config import config
from ingest.price_cache import PriceCache, PriceSample
from monitoring.async_utils import spawn
from orchestration.events import AUTO_TRADING_CHECK, AUTO_TRADING_EXECUTED, AUTO_TRADING_STATUS, EventBus
from orchestration.persistence import PersistenceError
from orchestration.state import ConnectionState
from strategy.execution import ExchangeRejection, OrderExecutor, UnrecordedFill, VerificationFailure
from strategy.execution_types import BUY, SELL, TradeResult
from strategy.reference_cycle import CyclePhase, cycle_phase, decide_action


logger = logging.getLogger(__name__)


class TradingUnavailable(Exception):
    """A trade command cannot run right now (trading halted, symbol busy or cooling down)."""


class AutoTradingEngine:
    """
    Threshold-driven buy/sell decisions, one evaluation per qualifying price event.

    Guards run in order and each short-circuits silently: auto-trading
    intent, global trading flag, per-symbol throttle, per-symbol mutex and
    per-symbol post-trade cooldown. All guard checks and the mutex
    acquisition happen before the first await, so two evaluations of the
    same symbol can never interleave. Failures are reported and the next
    qualifying event simply tries again, except when the order may have
    filled without being booked: that symbol is held until the operator
    reconciles it, so the same threshold never fires a second live order.
    """

    def __init__(
        self,
        state: ConnectionState,
        store: Any,
        executor: OrderExecutor,
        events: EventBus,
        cache: Optional[PriceCache] = None,
        notifier: Any = None,
        symbols: Optional[Iterable[str]] = None,
        investment_amount: Optional[float] = None,
        additional_purchase_amount: Optional[float] = None,
        check_interval_s: Optional[float] = None,
        cooldown_s: Optional[float] = None,
        quote_asset: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        trading = config.section('trading')
        exchange = config.section('exchange')
        self.state = state
        self.store = store
        self.executor = executor
        self.events = events
        self.cache = cache
        self.notifier = notifier
        self.quote_asset = quote_asset or exchange.get('quote_asset', 'USDT')
        if symbols is None:
            symbols = [f"{asset}{self.quote_asset}" for asset in exchange.get('assets', [])]
        self.symbols: Set[str] = set(symbols)
        self.investment_amount = float(investment_amount or trading.get('investment_amount', 50.0))
        self.additional_purchase_amount = float(
            additional_purchase_amount or trading.get('additional_purchase_amount', self.investment_amount)
        )
        self.check_interval_s = float(trading.get('check_interval_s', 10) if check_interval_s is None else check_interval_s)
        self.cooldown_s = float(trading.get('trade_cooldown_s', 180) if cooldown_s is None else cooldown_s)
        self._clock = clock

        self._active: Set[str] = set()
        self._last_check: Dict[str, float] = {}
        self._last_trade: Dict[str, float] = {}
        # Symbols whose last order may have filled without being booked
        self._held: Dict[str, str] = {}
        self._tasks: Set[asyncio.Task] = set()

    async def on_price(self, event: str, sample: PriceSample) -> None:
        """EventBus observer; evaluation runs off the feed reader so slow orders never stall it."""
        spawn(self.evaluate(sample.symbol, sample.price), self._tasks, name=f"auto-check-{sample.symbol}")

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def in_cooldown(self, symbol: str, now: Optional[float] = None) -> bool:
        last = self._last_trade.get(symbol)
        if last is None:
            return False
        now = self._clock() if now is None else now
        return now - last < self.cooldown_s

    def cooldown_remaining(self, symbol: str) -> float:
        last = self._last_trade.get(symbol)
        if last is None:
            return 0.0
        return max(0.0, self.cooldown_s - (self._clock() - last))

    def is_active(self, symbol: str) -> bool:
        return symbol in self._active

    def _try_begin(self, symbol: str) -> bool:
        if not self.state.auto_trading_enabled:
            return False
        if not self.state.trading_enabled:
            return False
        now = self._clock()
        last_check = self._last_check.get(symbol)
        if last_check is not None and now - last_check < self.check_interval_s:
            return False
        if symbol in self._active:
            logger.debug("Skipping %s check: execution in progress", symbol)
            return False
        if self.in_cooldown(symbol, now):
            logger.debug("Skipping %s check: cooling down", symbol)
            return False
        if symbol in self._held:
            logger.debug("Skipping %s check: held for reconciliation", symbol)
            return False
        self._last_check[symbol] = now
        self._active.add(symbol)
        return True

    async def evaluate(self, symbol: str, price: float) -> Optional[str]:
        """
        Run one guarded check. Returns the action taken (BUY, SELL), 'none'
        when no threshold is crossed, 'failed' when execution failed, or
        None when a guard short-circuited.
        """
        if symbol not in self.symbols or not self._try_begin(symbol):
            return None
        try:
            return await self._check(symbol, price)
        finally:
            self._active.discard(symbol)

    async def _check(self, symbol: str, price: float) -> str:
        try:
            reference = await self.store.get_reference_price(symbol)
            holdings = await self.store.get_current_holdings(symbol)
            balances = await self.store.get_account_balances()
        except PersistenceError as exc:
            metrics.record_auto_check('failed')
            await self._report_failure(symbol, 'evaluation', exc)
            return 'failed'

        quote_balance = balances.get(self.quote_asset, 0.0)
        amount = self._buy_amount(cycle_phase(reference))
        action = decide_action(reference, price, holdings.quantity, quote_balance, amount)
        await self.events.publish(AUTO_TRADING_CHECK, {
            'symbol': symbol,
            'price': price,
            'next_buy_price': reference.next_buy_price,
            'next_sell_price': reference.next_sell_price,
            'holdings': holdings.quantity,
            'quote_balance': quote_balance,
            'action': action,
        })
        if action is None:
            metrics.record_auto_check('none')
            return 'none'

        logger.info("Auto-trading %s %s at %.8f", action, symbol, price)
        try:
            if action == BUY:
                result = await self.executor.execute_buy(symbol, amount, price)
            else:
                result = await self.executor.execute_sell_all(symbol, price)
        except (ExchangeRejection, VerificationFailure, PersistenceError) as exc:
            metrics.record_auto_check('failed')
            self._hold_if_unsettled(symbol, exc)
            await self._report_failure(symbol, action, exc)
            return 'failed'
        except Exception as exc:
            metrics.record_auto_check('failed')
            logger.exception("Unexpected auto-trading failure for %s", symbol)
            await self._report_failure(symbol, action, exc)
            return 'failed'

        self._last_trade[symbol] = self._clock()
        metrics.record_auto_check(action.lower())
        await self.events.publish(AUTO_TRADING_EXECUTED, {'action': action, 'result': result})
        return action

    def _buy_amount(self, phase: CyclePhase) -> float:
        if phase is CyclePhase.ZERO:
            return self.investment_amount
        return self.additional_purchase_amount

    async def execute_manual(self, symbol: str, action: str, amount: Optional[float] = None) -> TradeResult:
        """
        Operator-triggered trade sharing the auto path's mutex and cooldown.

        Requires trading to be enabled but not the auto-trading intent.
        """
        action = action.upper()
        if action not in (BUY, SELL):
            raise ValueError(f"Unknown action '{action}'")
        if symbol not in self.symbols:
            raise ValueError(f"Unsupported symbol '{symbol}'")
        if not self.state.trading_enabled:
            raise TradingUnavailable("trading is disabled while the feed or exchange API is down")
        if symbol in self._active:
            raise TradingUnavailable(f"a trade check for {symbol} is already running")
        if symbol in self._held:
            raise TradingUnavailable(f"{symbol} is held until its last order is reconciled: {self._held[symbol]}")
        if self.in_cooldown(symbol):
            raise TradingUnavailable(f"{symbol} is cooling down for another {self.cooldown_remaining(symbol):.0f}s")
        if self.cache is None:
            raise TradingUnavailable("no price source configured")
        price = self.cache.get_price(symbol)

        self._active.add(symbol)
        try:
            if action == BUY:
                result = await self.executor.execute_buy(symbol, amount or self.investment_amount, price, automated=False)
            else:
                result = await self.executor.execute_sell_all(symbol, price, automated=False)
        except (ExchangeRejection, VerificationFailure, PersistenceError) as exc:
            self._hold_if_unsettled(symbol, exc)
            await self._report_failure(symbol, action, exc)
            raise
        finally:
            self._active.discard(symbol)
        self._last_trade[symbol] = self._clock()
        return result

    async def set_enabled(self, enabled: bool) -> bool:
        """Apply the operator's auto-trading switch and broadcast the state actually reached."""
        if enabled and not self.state.trading_enabled:
            result, reason = False, 'trading disabled: feed or exchange API unavailable'
        else:
            result, reason = enabled, 'enabled by operator' if enabled else 'disabled by operator'
        self.state.auto_trading_enabled = result
        metrics.update_connection(
            self.state.connected, self.state.api_connected, self.state.trading_enabled, result
        )
        logger.info("Auto-trading %s (%s)", "enabled" if result else "disabled", reason)
        await self.events.publish(AUTO_TRADING_STATUS, {'enabled': result, 'reason': reason})
        return result

    def _hold_if_unsettled(self, symbol: str, exc: Exception) -> None:
        """Stop trading a symbol whose order may have filled without reaching the books."""
        unsettled = isinstance(exc, UnrecordedFill) or (
            isinstance(exc, VerificationFailure) and exc.may_have_filled
        )
        if not unsettled:
            return
        self._held[symbol] = str(exc)
        self._last_trade[symbol] = self._clock()
        logger.error("%s held until reconciled; no further orders will be sent for it", symbol)

    def release(self, symbol: str) -> bool:
        """Lift a reconciliation hold once the operator has corrected the books."""
        reason = self._held.pop(symbol, None)
        if reason is not None:
            logger.info("%s released from reconciliation hold", symbol)
        return reason is not None

    def is_held(self, symbol: str) -> bool:
        return symbol in self._held

    async def _report_failure(self, symbol: str, action: str, exc: Exception) -> None:
        logger.error("%s %s failed: %s", action, symbol, exc)
        if self.notifier is None:
            return
        try:
            await self.notifier.send_error_notification(f"{action} {symbol} failed: {exc}")
        except Exception:
            metrics.record_notification_failure()
            logger.exception("Error notification failed for %s", symbol)

    def snapshot(self) -> Dict[str, Any]:
        return {
            'active': sorted(self._active),
            'held': dict(self._held),
            'cooldowns': {
                symbol: round(self.cooldown_remaining(symbol), 1)
                for symbol in sorted(self._last_trade)
                if self.in_cooldown(symbol)
            },
        }
