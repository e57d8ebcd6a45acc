import errno
import logging
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _get_port_scan_limit() -> int:
    try:
        return int(config.section('monitoring').get('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


class MetricsCollector:
    def __init__(self):
        self.feed_connected = Gauge('feed_connected', 'Price feed connection flag')
        self.api_connected = Gauge('exchange_api_connected', 'Exchange REST API health flag')
        self.trading_enabled = Gauge('trading_enabled', 'Global trading-enabled flag')
        self.auto_trading_enabled = Gauge('auto_trading_enabled', 'Auto-trading intent flag')

        self.reconnect_count = Counter('websocket_reconnects_total', 'Total WebSocket reconnects')
        self.stale_count = Counter('websocket_stale_total', 'Connections torn down by the heartbeat check')
        self.price_updates = Counter('price_updates_total', 'Price updates accepted from the feed', ['symbol'])
        self.current_price = Gauge('current_price', 'Last best-ask price', ['symbol'])
        self.dropped_events = Counter('dropped_events_total', 'Total dropped inbound frames', ['reason'])

        self.auto_checks = Counter('auto_trading_checks_total', 'Auto-trading evaluations by outcome', ['outcome'])
        self.trades_executed = Counter('trades_executed_total', 'Committed trades', ['side'])
        self.trade_failures = Counter('trade_failures_total', 'Aborted or failed trade attempts', ['reason'])
        self.order_round_trip = Histogram(
            'order_round_trip_seconds',
            'Latency from order submission to verified fill',
            buckets=(0.1, 0.25, 0.5, 1, 2, 5, 10),
        )
        self.observer_errors = Counter('observer_errors_total', 'Event observers that raised', ['event'])
        self.notification_failures = Counter('notification_failures_total', 'Notification deliveries that failed')

    def update_connection(self, connected: bool, api_connected: bool, trading_enabled: bool, auto_trading: bool):
        self.feed_connected.set(1 if connected else 0)
        self.api_connected.set(1 if api_connected else 0)
        self.trading_enabled.set(1 if trading_enabled else 0)
        self.auto_trading_enabled.set(1 if auto_trading else 0)

    def record_reconnect(self):
        self.reconnect_count.inc()

    def record_stale(self):
        self.stale_count.inc()

    def record_price(self, symbol: str, price: float):
        self.price_updates.labels(symbol=symbol).inc()
        self.current_price.labels(symbol=symbol).set(price)

    def record_drop(self, reason: str):
        self.dropped_events.labels(reason=reason).inc()

    def record_auto_check(self, outcome: str):
        self.auto_checks.labels(outcome=outcome).inc()

    def record_trade(self, side: str, latency_seconds: Optional[float] = None):
        self.trades_executed.labels(side=side.lower()).inc()
        if latency_seconds is not None:
            self.order_round_trip.observe(latency_seconds)

    def record_trade_failure(self, reason: str):
        self.trade_failures.labels(reason=reason).inc()

    def record_observer_error(self, event: str):
        self.observer_errors.labels(event=event).inc()

    def record_notification_failure(self):
        self.notification_failures.inc()


def start_metrics_server(port: int = 9090):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return _METRICS_PORT
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        logger.info("Prometheus metrics server started on port %s", candidate)
        return candidate
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error
    return None

metrics = MetricsCollector()
