import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from ingest.binance_rest import BinanceAPIError, BinanceRESTClient, TransientNetworkError

from strategy.execution_types import Fill, OrderTicket
from strategy.quantity import SymbolFilters


__all__ = ["BinanceTransport", "BinanceAPIError", "TransientNetworkError"]

logger = logging.getLogger(__name__)


class BinanceTransport:
    """Thin adapter around Binance spot REST with typed responses."""

    def __init__(self, rest: Optional[BinanceRESTClient] = None, filters_ttl_s: float = 3600.0) -> None:
        self._rest = rest
        self._lock = asyncio.Lock()
        self.filters_ttl_s = filters_ttl_s
        self._filters: Dict[str, Tuple[float, SymbolFilters]] = {}

    def _client(self) -> BinanceRESTClient:
        if self._rest is None:
            self._rest = BinanceRESTClient()
        return self._rest

    async def initialize(self) -> None:
        await self._client().sync_server_time()

    async def ping(self) -> bool:
        await self._client().get("/api/v3/ping")
        return True

    async def fetch_symbol_filters(self, symbol: str) -> SymbolFilters:
        cached = self._filters.get(symbol)
        if cached and time.monotonic() - cached[0] < self.filters_ttl_s:
            return cached[1]
        data = await self._client().get("/api/v3/exchangeInfo", params={"symbol": symbol})
        symbols = data.get("symbols") if isinstance(data, dict) else None
        if not symbols:
            raise ValueError(f"exchangeInfo returned no entry for {symbol}")
        filters = SymbolFilters.from_exchange_info(symbols[0])
        self._filters[symbol] = (time.monotonic(), filters)
        logger.debug("Loaded %s filters: step=%s minQty=%s minNotional=%s", symbol, filters.step_size, filters.min_qty, filters.min_notional)
        return filters

    async def place_market_order(self, symbol: str, side: str, quantity: str) -> OrderTicket:
        params = {
            "symbol": symbol,
            "side": side.upper(),
            "type": "MARKET",
            "quantity": quantity,
            "newOrderRespType": "FULL",
        }
        # Never resubmitted: a retry after a lost response could double the order
        data = await self._client().post("/api/v3/order", params=params, signed=True, retry=False)
        return self._parse_order(data)

    async def fetch_order(self, symbol: str, order_id: int) -> OrderTicket:
        data = await self._client().get(
            "/api/v3/order",
            params={"symbol": symbol, "orderId": order_id},
            signed=True,
        )
        return self._parse_order(data)

    async def fetch_balances(self) -> Dict[str, float]:
        """Free balance per asset, non-zero entries only."""
        data = await self._client().get("/api/v3/account", signed=True)
        balances: Dict[str, float] = {}
        if not isinstance(data, dict):
            return balances
        for entry in data.get("balances") or []:
            free = self._as_float(entry.get("free")) or 0.0
            if free > 0:
                balances[entry.get("asset")] = free
        return balances

    async def close(self) -> None:
        async with self._lock:
            if self._rest:
                try:
                    await self._rest.close()
                finally:
                    self._rest = None

    def _parse_order(self, payload: Any) -> OrderTicket:
        if not isinstance(payload, dict):
            raise ValueError(f"Unexpected order payload: {payload!r}")
        fills: List[Fill] = []
        for item in payload.get("fills") or []:
            fills.append(
                Fill(
                    price=self._as_float(item.get("price")) or 0.0,
                    quantity=self._as_float(item.get("qty")) or 0.0,
                    commission=self._as_float(item.get("commission")) or 0.0,
                    commission_asset=item.get("commissionAsset"),
                    trade_id=self._as_int(item.get("tradeId")),
                )
            )
        return OrderTicket(
            symbol=payload.get("symbol", ""),
            side=(payload.get("side") or "").upper(),
            type=payload.get("type") or "MARKET",
            quantity=self._as_float(payload.get("origQty")) or 0.0,
            status=payload.get("status"),
            executed_qty=self._as_float(payload.get("executedQty")) or 0.0,
            quote_qty=self._as_float(payload.get("cummulativeQuoteQty")) or 0.0,
            exchange_order_id=self._as_int(payload.get("orderId")),
            client_order_id=payload.get("clientOrderId"),
            transact_time=self._as_int(payload.get("transactTime") or payload.get("updateTime")),
            fills=fills,
            raw=payload,
        )

    @staticmethod
    def _as_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _as_int(value: Any) -> Optional[int]:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None
