import asyncio
import json
import logging
import time
from typing import Any, Callable, Iterable, List, Optional, Set

import websockets
import websockets.exceptions

from api.metrics import metrics
from config import config
from ingest.price_cache import PriceCache, PriceSample
from monitoring.async_utils import cancel_task, spawn
from orchestration.events import AUTO_TRADING_STATUS, CONNECTION_CHANGE, PRICE_UPDATE, EventBus
from orchestration.state import ConnectionState, FeedStatus


logger = logging.getLogger(__name__)


class FeedConnectionError(ConnectionError):
    """The stream could not be opened within the connect timeout."""


class ReconnectPolicy:
    """
    Exponential backoff: base * 2**attempts, at most ``max_doublings``
    doublings and never above ``max_delay_s``.

    The attempt counter is derived from elapsed time: it keeps climbing
    while failures arrive close together, including flaps where a
    reconnect succeeds and drops again, and restarts from zero once
    ``reset_after_s`` has passed since the previous attempt.
    """

    def __init__(
        self,
        base_delay_s: float = 1.0,
        max_delay_s: float = 30.0,
        max_doublings: int = 5,
        reset_after_s: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self.max_doublings = max_doublings
        self.reset_after_s = reset_after_s
        self._clock = clock
        self.attempts = 0
        self.last_attempt_at: Optional[float] = None

    def next_delay(self) -> float:
        now = self._clock()
        if self.last_attempt_at is not None and now - self.last_attempt_at > self.reset_after_s:
            self.attempts = 0
        delay = min(self.base_delay_s * (2 ** min(self.attempts, self.max_doublings)), self.max_delay_s)
        self.attempts += 1
        self.last_attempt_at = now
        return delay

    def reset(self) -> None:
        self.attempts = 0
        self.last_attempt_at = None


class ExchangeFeedConnection:
    """
    One multiplexed bookTicker stream for every supported asset.

    Each frame's best ask becomes the symbol's reference price in the
    PriceCache and is published as a price-update. Losing the stream
    clears trading_enabled but leaves the auto-trading intent in place;
    the reconnect chain carries that intent and reasserts it once a
    connection finally opens.
    """

    def __init__(
        self,
        state: ConnectionState,
        cache: PriceCache,
        events: EventBus,
        notifier: Any = None,
        assets: Optional[Iterable[str]] = None,
        quote_asset: Optional[str] = None,
        stream_url: Optional[str] = None,
        open_timeout_s: Optional[float] = None,
        heartbeat_timeout_s: Optional[float] = None,
        policy: Optional[ReconnectPolicy] = None,
        connector: Optional[Callable[..., Any]] = None,
    ):
        exchange = config.section('exchange')
        ws_cfg = config.section('websocket')
        self.state = state
        self.cache = cache
        self.events = events
        self.notifier = notifier
        self.quote_asset = quote_asset or exchange.get('quote_asset', 'USDT')
        self.symbols: List[str] = [f"{a.upper()}{self.quote_asset}" for a in (assets or exchange.get('assets', []))]
        self._symbol_set: Set[str] = set(self.symbols)
        self.stream_url = (stream_url or exchange.get('stream_url') or 'wss://stream.binance.com:9443/stream').rstrip('/')
        self.open_timeout_s = float(open_timeout_s or ws_cfg.get('open_timeout_s', 10))
        self.heartbeat_timeout_s = float(heartbeat_timeout_s or ws_cfg.get('heartbeat_timeout_s', 60))
        self.policy = policy or ReconnectPolicy(
            base_delay_s=float(ws_cfg.get('reconnect_base_delay_s', 1.0)),
            max_delay_s=float(ws_cfg.get('reconnect_max_delay_s', 30.0)),
            max_doublings=int(ws_cfg.get('reconnect_max_doublings', 5)),
            reset_after_s=float(ws_cfg.get('reconnect_reset_s', 120)),
        )
        self._connector = connector or websockets.connect

        self._ws = None
        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._restore_cancelled = False

    @property
    def url(self) -> str:
        streams = "/".join(f"{symbol.lower()}@bookTicker" for symbol in self.symbols)
        return f"{self.stream_url}?streams={streams}"

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    async def connect(self) -> None:
        """Open the stream; raises FeedConnectionError when it does not open within the timeout."""
        if self.state.is_shutdown:
            raise FeedConnectionError("feed connection is shut down")
        await self._set_status(FeedStatus.CONNECTING)
        try:
            ws = await asyncio.wait_for(
                self._connector(self.url, ping_interval=None),
                timeout=self.open_timeout_s,
            )
        except asyncio.TimeoutError as exc:
            await self._set_status(FeedStatus.ERROR)
            raise FeedConnectionError(f"stream did not open within {self.open_timeout_s:.0f}s") from exc
        except (OSError, websockets.exceptions.WebSocketException) as exc:
            await self._set_status(FeedStatus.ERROR)
            raise FeedConnectionError(f"stream open failed: {exc}") from exc

        if self.state.is_shutdown:
            await self._close_socket(ws)
            raise FeedConnectionError("feed connection shut down while opening")

        self._ws = ws
        self.state.mark_message()
        await self._set_status(FeedStatus.CONNECTED)
        self._reader_task = spawn(self._read_loop(ws), self._tasks, name="feed-reader")
        logger.info("Price feed connected (%s symbols)", len(self.symbols))

    async def start(self) -> None:
        """Connect, or fall into the reconnect chain when the first attempt fails."""
        try:
            await self.connect()
        except FeedConnectionError as exc:
            logger.warning("Initial feed connect failed: %s", exc)
            self._restore_cancelled = False
            await self._schedule_reconnect(self.state.auto_trading_enabled)

    async def close(self) -> None:
        await self._set_status(FeedStatus.SHUTDOWN)
        ws, self._ws = self._ws, None
        await cancel_task(self._reconnect_task)
        for task in list(self._tasks):
            await cancel_task(task)
        if ws is not None:
            await self._close_socket(ws)
        logger.info("Price feed closed")

    def cancel_restore(self) -> None:
        """Drop the pending restore intent, e.g. when the operator disables auto-trading mid-outage."""
        self._restore_cancelled = True

    def is_stale(self, now: Optional[float] = None) -> bool:
        if not self.state.connected or self.state.last_message_at is None:
            return False
        now = time.monotonic() if now is None else now
        return now - self.state.last_message_at > self.heartbeat_timeout_s

    async def force_reconnect(self, reason: str = "stale") -> None:
        """Tear the live socket down and reconnect immediately."""
        ws = self._ws
        if ws is None:
            return
        restore = self.state.auto_trading_enabled
        self._ws = None
        self._restore_cancelled = False
        logger.warning("Forcing feed reconnect: %s", reason)
        metrics.record_stale()
        await self._set_status(FeedStatus.STALE)
        await self._close_socket(ws)
        await self._schedule_reconnect(restore, immediate=True)

    async def handle_frame(self, raw: Any) -> Optional[PriceSample]:
        self.state.mark_message()
        try:
            message = json.loads(raw)
            data = message["data"]
            symbol = data["s"]
            price = float(data["a"])
        except (ValueError, KeyError, TypeError) as exc:
            metrics.record_drop("malformed")
            logger.warning("Dropping malformed frame (%s): %.120r", exc, raw)
            return None

        if symbol not in self._symbol_set:
            metrics.record_drop("unsupported")
            return None
        if price <= 0:
            metrics.record_drop("non_positive")
            return None

        sample = self.cache.update(symbol, price)
        metrics.record_price(symbol, price)
        await self.events.publish(PRICE_UPDATE, sample)
        return sample

    async def _read_loop(self, ws) -> None:
        status = FeedStatus.CLOSED
        reason = "closed by server"
        try:
            async for raw in ws:
                await self.handle_frame(raw)
        except asyncio.CancelledError:
            raise
        except websockets.exceptions.ConnectionClosed as exc:
            reason = f"closed: {exc}"
        except Exception as exc:
            status = FeedStatus.ERROR
            reason = f"error: {exc}"
            logger.exception("Price feed reader failed")

        if ws is not self._ws:
            # Replaced or torn down deliberately; that path already scheduled a reconnect
            return
        await self._handle_disconnect(status, reason)

    async def _handle_disconnect(self, status: FeedStatus, reason: str) -> None:
        restore = self.state.auto_trading_enabled
        self._ws = None
        self._restore_cancelled = False
        logger.warning("Price feed lost (%s); trading disabled until reconnect", reason)
        await self._set_status(status)
        await self._schedule_reconnect(restore)

    async def _schedule_reconnect(self, restore: bool, immediate: bool = False) -> None:
        if self.state.is_shutdown or self.reconnect_pending:
            return
        delay = 0.0 if immediate else self.policy.next_delay()
        self.state.reconnect_attempts = self.policy.attempts
        await self._set_status(FeedStatus.RECONNECT_SCHEDULED)
        metrics.record_reconnect()
        logger.info("Reconnecting price feed in %.1fs (attempt %s)", delay, self.policy.attempts)
        self._reconnect_task = spawn(self._reconnect_after(delay, restore), self._tasks, name="feed-reconnect")

    async def _reconnect_after(self, delay: float, restore: bool) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        self._reconnect_task = None
        try:
            await self.connect()
        except FeedConnectionError as exc:
            logger.warning("Feed reconnect failed: %s", exc)
            await self._schedule_reconnect(restore)
            return
        await self._on_reconnected(restore)

    async def _on_reconnected(self, restore: bool) -> None:
        if not restore or self._restore_cancelled:
            return
        self.state.auto_trading_enabled = True
        metrics.update_connection(
            self.state.connected, self.state.api_connected, self.state.trading_enabled, True
        )
        await self.events.publish(AUTO_TRADING_STATUS, {"enabled": True, "reason": "restored after reconnect"})
        if self.notifier is None:
            return
        try:
            await self.notifier.send_message("✅ Price feed reconnected; auto-trading restored")
        except Exception:
            metrics.record_notification_failure()
            logger.exception("Reconnect notification failed")

    async def _set_status(self, status: FeedStatus) -> None:
        if not self.state.transition(status):
            logger.debug("Ignoring feed transition %s -> %s", self.state.status.value, status.value)
            return
        metrics.update_connection(
            self.state.connected,
            self.state.api_connected,
            self.state.trading_enabled,
            self.state.auto_trading_enabled,
        )
        await self.events.publish(CONNECTION_CHANGE, self.state.to_dict())

    @staticmethod
    async def _close_socket(ws) -> None:
        try:
            await asyncio.wait_for(ws.close(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning("Timed out closing feed socket")
        except (OSError, websockets.exceptions.WebSocketException) as exc:
            logger.debug("Error closing feed socket: %s", exc)
