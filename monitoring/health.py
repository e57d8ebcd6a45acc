import asyncio
import logging
import time
from typing import Any, Optional

from api.metrics import metrics
from config import config
from ingest.binance_rest import BinanceAPIError, TransientNetworkError
from orchestration.events import CONNECTION_CHANGE, EventBus
from orchestration.state import ConnectionState


logger = logging.getLogger(__name__)


class ConnectionHealthMonitor:
    """
    Periodic health checks behind the global trading-enabled flag.

    Feed staleness is checked every half heartbeat window; a silent stream
    is torn down and reconnected immediately. The exchange REST API is
    pinged on its own interval and drives ``api_connected``.
    """

    def __init__(
        self,
        feed,
        state: ConnectionState,
        transport: Any,
        events: EventBus,
        check_interval_s: Optional[float] = None,
        api_ping_interval_s: Optional[float] = None,
        api_ping_timeout_s: Optional[float] = None,
    ):
        monitoring_cfg = config.section('monitoring')
        self.feed = feed
        self.state = state
        self.transport = transport
        self.events = events
        self.check_interval_s = float(check_interval_s or feed.heartbeat_timeout_s / 2)
        self.api_ping_interval_s = float(api_ping_interval_s or monitoring_cfg.get('api_ping_interval_s', 60))
        self.api_ping_timeout_s = float(api_ping_timeout_s or monitoring_cfg.get('api_ping_timeout_s', 10))
        self._running = False

    async def check_staleness(self, now: Optional[float] = None) -> bool:
        if not self.feed.is_stale(now):
            return False
        now = time.monotonic() if now is None else now
        silent_for = now - (self.state.last_message_at or now)
        logger.warning("No feed frame for %.0fs; forcing reconnect", silent_for)
        await self.feed.force_reconnect("stale")
        return True

    async def check_api(self) -> bool:
        try:
            healthy = bool(await asyncio.wait_for(self.transport.ping(), timeout=self.api_ping_timeout_s))
        except asyncio.TimeoutError:
            logger.warning("Exchange API ping timed out after %.0fs", self.api_ping_timeout_s)
            healthy = False
        except (BinanceAPIError, TransientNetworkError, OSError) as exc:
            logger.warning("Exchange API ping failed: %s", exc)
            healthy = False

        if self.state.set_api_connected(healthy):
            logger.info("Exchange API %s", "reachable" if healthy else "unreachable; trading disabled")
            metrics.update_connection(
                self.state.connected,
                self.state.api_connected,
                self.state.trading_enabled,
                self.state.auto_trading_enabled,
            )
            await self.events.publish(CONNECTION_CHANGE, self.state.to_dict())
        return healthy

    async def _staleness_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.check_interval_s)
            try:
                await self.check_staleness()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Staleness check failed")

    async def _api_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.api_ping_interval_s)
            try:
                await self.check_api()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("API health check failed")

    async def run(self) -> None:
        self._running = True
        try:
            await asyncio.gather(self._staleness_loop(), self._api_loop())
        finally:
            self._running = False

    def stop(self) -> None:
        self._running = False
