import asyncio
import logging
from typing import Any, Dict, List, Optional

from api.metrics import start_metrics_server
from api.notifier import TelegramNotifier
from config import config
from ingest.binance_rest import BinanceAPIError, BinanceRESTClient, TransientNetworkError
from ingest.price_cache import NoData, NotConnected, PriceCache
from ingest.websocket_client import ExchangeFeedConnection
from monitoring.async_utils import run_tasks_with_cleanup
from monitoring.health import ConnectionHealthMonitor
from monitoring.logging_utils import setup_logging
from orchestration.events import PRICE_UPDATE, REFERENCE_PRICE_UPDATED, EventBus
from orchestration.persistence import PersistenceError, TradingStore
from orchestration.state import ConnectionState
from strategy.auto_trader import AutoTradingEngine
from strategy.execution import OrderExecutor
from strategy.execution_types import BUY, SELL, ReferencePrice, TradeRecord, TradeResult
from strategy.simulators.paper import PaperExchange
from strategy.transports.binance import BinanceTransport


logger = logging.getLogger(__name__)


class TradingBot:
    """Wire the price feed, health checks, auto-trading engine and executor around one ConnectionState."""

    def __init__(
        self,
        config_obj=None,
        store: Any = None,
        transport: Any = None,
        notifier: Any = None,
        connector: Any = None,
    ):
        self.config = config_obj or config
        exchange = self.config.section('exchange')
        trading = self.config.section('trading')
        self.monitoring_cfg = self.config.section('monitoring')

        self.state = ConnectionState(auto_trading_enabled=bool(trading.get('auto_trading_enabled', False)))
        self.events = EventBus()
        self.cache = PriceCache(lambda: self.state.connected)

        has_credentials = bool(exchange.get('api_key') and exchange.get('api_secret'))
        self.paper_mode = bool(exchange.get('paper_trading', False)) or not has_credentials
        if transport is None:
            if self.paper_mode:
                transport = PaperExchange(
                    self.cache.get_price,
                    quote_asset=exchange.get('quote_asset', 'USDT'),
                    quote_balance=float(exchange.get('paper_quote_balance', 1000.0)),
                )
            else:
                transport = BinanceTransport(
                    BinanceRESTClient(),
                    filters_ttl_s=float(exchange.get('symbol_filters_ttl_s', 3600)),
                )
        self.transport = transport
        self.store = store if store is not None else TradingStore()
        self.notifier = notifier if notifier is not None else TelegramNotifier()

        self.feed = ExchangeFeedConnection(
            self.state,
            self.cache,
            self.events,
            notifier=self.notifier,
            connector=connector,
        )
        self.executor = OrderExecutor(self.transport, self.store, self.events, notifier=self.notifier)
        self.engine = AutoTradingEngine(
            self.state,
            self.store,
            self.executor,
            self.events,
            cache=self.cache,
            notifier=self.notifier,
            symbols=self.feed.symbols,
        )
        self.health = ConnectionHealthMonitor(self.feed, self.state, self.transport, self.events)
        self.events.subscribe(PRICE_UPDATE, self.engine.on_price)
        self.running = False

    async def initialize(self):
        await self.store.initialize()
        await self.store.ensure_reference_rows(self.feed.symbols)
        try:
            await self.transport.initialize()
        except (BinanceAPIError, TransientNetworkError) as exc:
            logger.error("Exchange initialization failed: %s", exc)
        await self.health.check_api()
        await self.refresh_balances()
        logger.info(
            "Initialized %s symbols (%s mode)",
            len(self.feed.symbols),
            "paper" if self.paper_mode else "live",
        )

    async def refresh_balances(self) -> Dict[str, float]:
        try:
            balances = await self.transport.fetch_balances()
            await self.store.update_account_balances(balances)
            return balances
        except (BinanceAPIError, TransientNetworkError, PersistenceError) as exc:
            logger.error("Balance refresh failed: %s", exc)
            return {}

    async def start(self):
        self.running = True
        await self.initialize()

        port = self.monitoring_cfg.get('prometheus_port')
        if port:
            start_metrics_server(int(port))

        await self.feed.start()
        await self.notifier.send_status_notification({
            'mode': 'paper' if self.paper_mode else 'live',
            'feed': self.state.status.value,
            'auto_trading': self.state.auto_trading_enabled,
        })

        tasks = [asyncio.create_task(self.health.run())]

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    async def stop(self):
        if not self.running:
            return
        self.running = False
        self.health.stop()
        await self.feed.close()
        await self.engine.drain()
        await self.transport.close()
        await self.store.close()
        await self.notifier.close()
        logger.info("Trading bot stopped")

    async def set_auto_trading(self, enabled: bool) -> bool:
        result = await self.engine.set_enabled(enabled)
        if not enabled:
            self.feed.cancel_restore()
        return result

    async def first_purchase(self, symbol: str, amount: Optional[float] = None) -> TradeResult:
        return await self.engine.execute_manual(symbol, BUY, amount)

    async def sell_all(self, symbol: str) -> TradeResult:
        return await self.engine.execute_manual(symbol, SELL)

    async def set_reference_price(self, symbol: str, **fields: float) -> ReferencePrice:
        """Operator correction of the thresholds; also lifts a reconciliation hold on the symbol."""
        reference = await self.store.update_reference_price(symbol, fields, force=True)
        self.engine.release(symbol)
        await self.events.publish(REFERENCE_PRICE_UPDATED, reference)
        return reference

    def release_symbol(self, symbol: str) -> bool:
        return self.engine.release(symbol)

    async def trading_history(self, symbol: str, limit: int = 10) -> List[TradeRecord]:
        return await self.store.get_trading_history(symbol, limit)

    async def status(self) -> Dict[str, Any]:
        references = await self.store.get_all_reference_prices()
        symbols: Dict[str, Any] = {}
        for symbol in self.feed.symbols:
            try:
                price = self.cache.get_price(symbol)
            except (NotConnected, NoData):
                price = None
            holdings = await self.store.get_current_holdings(symbol)
            reference = references.get(symbol) or ReferencePrice(symbol=symbol)
            symbols[symbol] = {
                'price': price,
                'reference': reference.to_dict(),
                'holdings': holdings.to_dict(),
            }
        return {
            'mode': 'paper' if self.paper_mode else 'live',
            'connection': self.state.to_dict(),
            'engine': self.engine.snapshot(),
            'balances': await self.store.get_account_balances(),
            'symbols': symbols,
        }


async def main():
    bot = TradingBot(config)
    try:
        await bot.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Trading bot shutting down on interrupt")
        await bot.stop()


if __name__ == "__main__":
    setup_logging(config.section('monitoring').get('log_level', 'INFO'))
    asyncio.run(main())
