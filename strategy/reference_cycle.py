"""
Reference-price cycle for one asset.

    ZERO -> FIRST_HOLDING -> ACCUMULATING -> ... -> ZERO

A cycle starts at the first buy, which fixes the profit target
(next_sell_price) from that buy's executed price. Later buys only lower the
next buy threshold. A sell-all zeroes the cycle so the following buy starts
a new one.
"""
from enum import Enum
from typing import Optional

from strategy.execution_types import BUY, SELL, ReferencePrice


class CyclePhase(Enum):
    ZERO = "zero"
    FIRST_HOLDING = "first_holding"
    ACCUMULATING = "accumulating"


def cycle_phase(reference: ReferencePrice) -> CyclePhase:
    if reference.first_transaction_price <= 0:
        return CyclePhase.ZERO
    if reference.last_transaction_price == reference.first_transaction_price:
        return CyclePhase.FIRST_HOLDING
    return CyclePhase.ACCUMULATING


def apply_buy(reference: ReferencePrice, executed_price: float, buy_pct: float, sell_pct: float) -> ReferencePrice:
    if executed_price <= 0:
        raise ValueError(f"Executed buy price must be positive, got {executed_price}")
    changes = {
        "next_buy_price": executed_price * (1 - buy_pct),
        "last_transaction_price": executed_price,
    }
    if reference.first_transaction_price == 0:
        changes["first_transaction_price"] = executed_price
        changes["next_sell_price"] = executed_price * (1 + sell_pct)
    return reference.evolve(**changes)


def apply_sell_all(reference: ReferencePrice, trigger_price: float, buy_pct: float) -> ReferencePrice:
    if trigger_price <= 0:
        raise ValueError(f"Sell trigger price must be positive, got {trigger_price}")
    return reference.evolve(
        next_buy_price=trigger_price * (1 - buy_pct),
        last_transaction_price=trigger_price,
        next_sell_price=0.0,
        first_transaction_price=0.0,
    )


def should_buy(reference: ReferencePrice, price: float, quote_balance: float, investment: float) -> bool:
    return reference.next_buy_price > 0 and price <= reference.next_buy_price and quote_balance >= investment


def should_sell(reference: ReferencePrice, price: float, holdings_qty: float) -> bool:
    return reference.next_sell_price > 0 and price >= reference.next_sell_price and holdings_qty > 0


def decide_action(
    reference: ReferencePrice,
    price: float,
    holdings_qty: float,
    quote_balance: float,
    investment: float,
) -> Optional[str]:
    """BUY, SELL or None for one tick. Buy wins when both thresholds are met."""
    if should_buy(reference, price, quote_balance, investment):
        return BUY
    if should_sell(reference, price, holdings_qty):
        return SELL
    return None
