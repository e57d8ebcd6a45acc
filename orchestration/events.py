import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Union

from api.metrics import metrics


logger = logging.getLogger(__name__)

PRICE_UPDATE = "price-update"
ORDER_UPDATE = "order-update"
CONNECTION_CHANGE = "connection-change"
AUTO_TRADING_STATUS = "auto-trading-status"
REFERENCE_PRICE_UPDATED = "reference-price-updated"
AUTO_TRADING_EXECUTED = "auto-trading-executed"
AUTO_TRADING_CHECK = "auto-trading-check"

EVENT_NAMES = (
    PRICE_UPDATE,
    ORDER_UPDATE,
    CONNECTION_CHANGE,
    AUTO_TRADING_STATUS,
    REFERENCE_PRICE_UPDATED,
    AUTO_TRADING_EXECUTED,
    AUTO_TRADING_CHECK,
)

Observer = Callable[[str, Any], Union[None, Awaitable[None]]]


class EventBus:
    """
    Publish/subscribe fan-out for the upward event surface.

    Every observer of an event receives each published payload once, in
    subscription order. An observer that raises is logged and skipped; the
    remaining observers and the publisher are unaffected. Observers may be
    plain callables or coroutine functions.
    """

    def __init__(self) -> None:
        self._observers: Dict[str, List[Observer]] = defaultdict(list)

    def subscribe(self, event: str, observer: Observer) -> Callable[[], None]:
        if event not in EVENT_NAMES:
            raise ValueError(f"Unknown event '{event}'")
        self._observers[event].append(observer)

        def unsubscribe() -> None:
            try:
                self._observers[event].remove(observer)
            except ValueError:
                pass

        return unsubscribe

    def subscribe_all(self, observer: Observer) -> Callable[[], None]:
        handles = [self.subscribe(event, observer) for event in EVENT_NAMES]

        def unsubscribe() -> None:
            for handle in handles:
                handle()

        return unsubscribe

    def observer_count(self, event: str) -> int:
        return len(self._observers.get(event, ()))

    async def publish(self, event: str, payload: Any = None) -> int:
        """Deliver to every observer; returns the number that completed without error."""
        delivered = 0
        # Copy so observers may unsubscribe while being notified
        for observer in list(self._observers.get(event, ())):
            try:
                result = observer(event, payload)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                metrics.record_observer_error(event)
                logger.exception("Observer %r failed for event %s", observer, event)
        return delivered
