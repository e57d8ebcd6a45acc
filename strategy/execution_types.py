from dataclasses import dataclass, field, asdict, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

BUY = "BUY"
SELL = "SELL"


@dataclass(frozen=True)
class Fill:
    price: float
    quantity: float
    commission: float = 0.0
    commission_asset: Optional[str] = None
    trade_id: Optional[int] = None


@dataclass
class OrderTicket:
    """Normalized view of a spot order response across live and paper flows."""

    symbol: str
    side: str
    type: str
    quantity: float
    status: Optional[str] = None
    executed_qty: float = 0.0
    quote_qty: float = 0.0
    exchange_order_id: Optional[int] = None
    client_order_id: Optional[str] = None
    transact_time: Optional[int] = None
    fills: List[Fill] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        if self.exchange_order_id is not None:
            return str(self.exchange_order_id)
        if self.client_order_id:
            return self.client_order_id
        return "order"

    @property
    def is_filled(self) -> bool:
        return self.status == "FILLED"

    @property
    def average_price(self) -> Optional[float]:
        """Quantity-weighted fill price, falling back to quote/executed totals."""
        qty = sum(f.quantity for f in self.fills)
        if qty > 0:
            return sum(f.price * f.quantity for f in self.fills) / qty
        if self.executed_qty > 0 and self.quote_qty > 0:
            return self.quote_qty / self.executed_qty
        return None

    @property
    def trade_id(self) -> str:
        """Ledger key: the first fill's trade id, or the order id when fills carry none."""
        for fill in self.fills:
            if fill.trade_id is not None:
                return str(fill.trade_id)
        return self.id

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side,
            "type": self.type,
            "status": self.status,
            "quantity": self.quantity,
            "executed_qty": self.executed_qty,
            "quote_qty": self.quote_qty,
            "average_price": self.average_price,
            "exchange_order_id": self.exchange_order_id,
            "client_order_id": self.client_order_id,
            "transact_time": self.transact_time,
            "fills": [asdict(f) for f in self.fills],
        }


@dataclass(frozen=True)
class TradeRecord:
    """Immutable ledger entry; exchange_trade_id is the deduplication key."""

    symbol: str
    action: str
    quantity: float
    price: float
    quote_amount: float
    trade_time: datetime
    exchange_trade_id: str
    automated: bool = True

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["trade_time"] = self.trade_time.isoformat()
        return data


@dataclass(frozen=True)
class ReferencePrice:
    symbol: str
    first_transaction_price: float = 0.0
    last_transaction_price: float = 0.0
    next_buy_price: float = 0.0
    next_sell_price: float = 0.0
    updated_at: Optional[datetime] = None

    def evolve(self, **changes: Any) -> "ReferencePrice":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return data


@dataclass(frozen=True)
class Holdings:
    symbol: str
    quantity: float = 0.0
    average_buy_price: float = 0.0
    total_bought: float = 0.0
    total_spent: float = 0.0
    total_received: float = 0.0

    @classmethod
    def from_totals(
        cls,
        symbol: str,
        bought: float,
        sold: float,
        spent: float,
        received: float,
        open_quantity: Optional[float] = None,
    ) -> "Holdings":
        """
        ``open_quantity`` is the quantity bought since the last sell-all.
        Every sell liquidates the free balance, so dust the exchange could
        not sell does not carry into the next cycle.
        """
        held = bought - sold if open_quantity is None else open_quantity
        # Ledger sums are floats; drop residue below exchange precision
        quantity = max(0.0, round(held, 12))
        average = spent / bought if bought > 0 else 0.0
        return cls(
            symbol=symbol,
            quantity=quantity,
            average_buy_price=average,
            total_bought=bought,
            total_spent=spent,
            total_received=received,
        )

    @property
    def net_profit(self) -> float:
        return self.total_received - self.total_spent

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["net_profit"] = self.net_profit
        return data


@dataclass
class TradeResult:
    """Outcome of one committed trade, as published to observers."""

    symbol: str
    action: str
    trade: TradeRecord
    order: OrderTicket
    reference: ReferencePrice
    trigger_price: float
    recorded: bool = True
    automated: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "action": self.action,
            "trade": self.trade.to_dict(),
            "order": self.order.as_dict(),
            "reference": self.reference.to_dict(),
            "trigger_price": self.trigger_price,
            "recorded": self.recorded,
            "automated": self.automated,
        }


def utc_from_ms(ms: Optional[int]) -> datetime:
    if not ms:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)
