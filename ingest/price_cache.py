import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Dict, Mapping, Optional


class NotConnected(Exception):
    """The feed is not open; cached prices are not served in its place."""


class NoData(Exception):
    """No sample has arrived for the symbol since startup."""


@dataclass(frozen=True)
class PriceSample:
    symbol: str
    price: float
    received_at: float

    def to_dict(self):
        return {"symbol": self.symbol, "price": self.price, "receivedAt": self.received_at}


class PriceCache:
    """
    Last-known best-ask per symbol.

    The feed connection is the only writer. Samples are immutable and the
    table entry is swapped in a single assignment, so readers never wait.
    """

    def __init__(self, is_connected: Callable[[], bool]):
        self._is_connected = is_connected
        self._samples: Dict[str, PriceSample] = {}

    def update(self, symbol: str, price: float, received_at: Optional[float] = None) -> PriceSample:
        sample = PriceSample(symbol=symbol, price=float(price), received_at=received_at or time.time())
        self._samples[symbol] = sample
        return sample

    def get(self, symbol: str) -> PriceSample:
        if not self._is_connected():
            raise NotConnected(f"Price feed is not connected; no live price for {symbol}")
        sample = self._samples.get(symbol)
        if sample is None:
            raise NoData(f"No price received yet for {symbol}")
        return sample

    def get_price(self, symbol: str) -> float:
        return self.get(symbol).price

    def snapshot(self) -> Mapping[str, PriceSample]:
        return MappingProxyType(dict(self._samples))
