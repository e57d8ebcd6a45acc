import itertools
import logging
import time
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional

from ingest.binance_rest import BinanceAPIError

from strategy.execution_types import Fill, OrderTicket
from strategy.quantity import SymbolFilters, to_decimal


logger = logging.getLogger(__name__)

# Binance error code for rejected orders
NEW_ORDER_REJECTED = -2010


def default_filters(symbol: str) -> SymbolFilters:
    return SymbolFilters(
        symbol=symbol,
        step_size=Decimal("0.00001"),
        min_qty=Decimal("0.00001"),
        max_qty=Decimal("9000000"),
        min_notional=Decimal("5"),
    )


class PaperExchange:
    """
    In-process stand-in for the spot transport.

    Market orders fill immediately and in full at the live price returned by
    ``price_lookup``. Balances move accordingly, and filled orders stay
    queryable by id.
    """

    def __init__(
        self,
        price_lookup: Callable[[str], float],
        quote_asset: str = "USDT",
        quote_balance: float = 1000.0,
        filters: Optional[Dict[str, SymbolFilters]] = None,
    ) -> None:
        self._price_lookup = price_lookup
        self.quote_asset = quote_asset
        self._balances: Dict[str, Decimal] = {quote_asset: to_decimal(quote_balance)}
        self._filters = dict(filters or {})
        self._orders: Dict[int, OrderTicket] = {}
        self._order_ids = itertools.count(1)
        self._trade_ids = itertools.count(1)

    @property
    def balances(self) -> Mapping[str, float]:
        return MappingProxyType({asset: float(qty) for asset, qty in self._balances.items()})

    def set_balance(self, asset: str, amount: float) -> None:
        self._balances[asset] = to_decimal(amount)

    async def initialize(self) -> None:
        logger.info("Paper exchange active; orders are simulated against live prices")

    async def ping(self) -> bool:
        return True

    async def fetch_symbol_filters(self, symbol: str) -> SymbolFilters:
        return self._filters.get(symbol) or default_filters(symbol)

    async def place_market_order(self, symbol: str, side: str, quantity: str) -> OrderTicket:
        side = side.upper()
        qty = to_decimal(quantity)
        if qty <= 0:
            raise BinanceAPIError(400, NEW_ORDER_REJECTED, "Invalid quantity.", "")
        price = to_decimal(self._price_lookup(symbol))
        base = self._base_asset(symbol)
        cost = qty * price

        if side == "BUY":
            if self._balances.get(self.quote_asset, Decimal(0)) < cost:
                raise BinanceAPIError(400, NEW_ORDER_REJECTED, "Account has insufficient balance for requested action.", "")
            self._balances[self.quote_asset] -= cost
            self._balances[base] = self._balances.get(base, Decimal(0)) + qty
        elif side == "SELL":
            if self._balances.get(base, Decimal(0)) < qty:
                raise BinanceAPIError(400, NEW_ORDER_REJECTED, "Account has insufficient balance for requested action.", "")
            self._balances[base] -= qty
            self._balances[self.quote_asset] = self._balances.get(self.quote_asset, Decimal(0)) + cost
        else:
            raise BinanceAPIError(400, NEW_ORDER_REJECTED, f"Unknown side {side}.", "")

        order_id = next(self._order_ids)
        ticket = OrderTicket(
            symbol=symbol,
            side=side,
            type="MARKET",
            quantity=float(qty),
            status="FILLED",
            executed_qty=float(qty),
            quote_qty=float(cost),
            exchange_order_id=order_id,
            client_order_id=f"paper-{order_id}",
            transact_time=int(time.time() * 1000),
            fills=[Fill(price=float(price), quantity=float(qty), trade_id=next(self._trade_ids))],
        )
        self._orders[order_id] = ticket
        logger.info("[Paper] %s %s %s @ %s", side, qty, symbol, price)
        return ticket

    async def fetch_order(self, symbol: str, order_id: int) -> OrderTicket:
        ticket = self._orders.get(order_id)
        if ticket is None or ticket.symbol != symbol:
            raise BinanceAPIError(400, -2013, "Order does not exist.", "")
        return ticket

    async def fetch_balances(self) -> Dict[str, float]:
        return {asset: float(qty) for asset, qty in self._balances.items() if qty > 0}

    async def close(self) -> None:
        return None

    def _base_asset(self, symbol: str) -> str:
        if symbol.endswith(self.quote_asset):
            return symbol[: -len(self.quote_asset)]
        return symbol

    def snapshot(self) -> Dict[str, Any]:
        return {"balances": dict(self.balances), "orders": len(self._orders)}
