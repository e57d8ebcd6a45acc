from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING, ROUND_DOWN, ROUND_FLOOR
from typing import Any, Dict, Optional, Union

Number = Union[Decimal, float, int, str]


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() keeps 0.1 as 0.1 instead of the binary float expansion
    return Decimal(str(value))


def step_precision(step: Decimal) -> int:
    exponent = step.normalize().as_tuple().exponent
    return max(0, -int(exponent))


@dataclass(frozen=True)
class SymbolFilters:
    """Quantity rules for one trading pair, parsed from exchangeInfo."""

    symbol: str
    step_size: Decimal
    min_qty: Decimal
    max_qty: Decimal
    min_notional: Decimal
    tick_size: Optional[Decimal] = None

    @classmethod
    def from_exchange_info(cls, payload: Dict[str, Any]) -> "SymbolFilters":
        filters = {f.get("filterType"): f for f in payload.get("filters", [])}
        lot = filters.get("LOT_SIZE")
        if not lot:
            raise ValueError(f"LOT_SIZE filter not found for {payload.get('symbol')}")
        notional = filters.get("NOTIONAL") or filters.get("MIN_NOTIONAL") or {}
        price_filter = filters.get("PRICE_FILTER") or {}
        tick = price_filter.get("tickSize")
        return cls(
            symbol=payload.get("symbol", ""),
            step_size=to_decimal(lot["stepSize"]),
            min_qty=to_decimal(lot.get("minQty", "0")),
            max_qty=to_decimal(lot.get("maxQty", "0")),
            min_notional=to_decimal(notional.get("minNotional", "0")),
            tick_size=to_decimal(tick) if tick is not None else None,
        )

    @property
    def precision(self) -> int:
        return step_precision(self.step_size)


def clamp_quantity(quantity: Decimal, filters: SymbolFilters) -> Decimal:
    if quantity < filters.min_qty:
        quantity = filters.min_qty
    if filters.max_qty > 0 and quantity > filters.max_qty:
        quantity = filters.max_qty
    return quantity


def meet_min_notional(quantity: Decimal, price: Decimal, filters: SymbolFilters) -> Decimal:
    """Raise the quantity to the smallest step multiple whose notional reaches minNotional."""
    if filters.min_notional <= 0 or quantity * price >= filters.min_notional:
        return quantity
    required = filters.min_notional / price
    if filters.step_size > 0:
        steps = (required / filters.step_size).to_integral_value(rounding=ROUND_CEILING)
        return steps * filters.step_size
    return required.to_integral_value(rounding=ROUND_CEILING)


def floor_to_grid(quantity: Decimal, filters: SymbolFilters) -> Decimal:
    step = filters.step_size
    if step <= 0:
        return quantity
    steps = ((quantity - filters.min_qty) / step).to_integral_value(rounding=ROUND_FLOOR)
    return steps * step + filters.min_qty


def format_quantity(quantity: Number, price: Number, filters: SymbolFilters) -> str:
    """
    Turn a raw order size into a string the exchange accepts.

    Clamp to [minQty, maxQty], bump up to minNotional, floor onto the step
    grid anchored at minQty, and render with the step's decimal precision.

    The minNotional bump rounds up to the next step multiple,
    ceil(minNotional / price / stepSize) * stepSize, rather than to a whole
    unit with ceil(minNotional / price). A whole-unit ceil would oversize
    fractional assets such as BTC by orders of magnitude.
    """
    qty = to_decimal(quantity)
    px = to_decimal(price)
    if px <= 0:
        raise ValueError(f"Cannot size {filters.symbol} order at non-positive price {price}")

    qty = clamp_quantity(qty, filters)
    qty = meet_min_notional(qty, px, filters)
    qty = floor_to_grid(qty, filters)
    if filters.min_notional > 0 and qty * px < filters.min_notional:
        # minQty off the step grid can leave the floor one step short
        qty += filters.step_size
    if filters.max_qty > 0 and qty > filters.max_qty:
        raise ValueError(
            f"{filters.symbol} quantity {qty} exceeds maxQty {filters.max_qty} after minimum-notional adjustment"
        )

    exponent = Decimal(1).scaleb(-filters.precision)
    return str(qty.quantize(exponent, rounding=ROUND_DOWN))
