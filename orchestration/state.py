import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional


class FeedStatus(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    STALE = "stale"
    ERROR = "error"
    CLOSED = "closed"
    RECONNECT_SCHEDULED = "reconnect_scheduled"
    SHUTDOWN = "shutdown"


# Allowed transitions; SHUTDOWN is reachable from everywhere and is terminal.
FEED_TRANSITIONS = {
    FeedStatus.DISCONNECTED: {FeedStatus.CONNECTING},
    FeedStatus.CONNECTING: {FeedStatus.CONNECTED, FeedStatus.ERROR, FeedStatus.CLOSED},
    FeedStatus.CONNECTED: {FeedStatus.STALE, FeedStatus.ERROR, FeedStatus.CLOSED},
    FeedStatus.STALE: {FeedStatus.RECONNECT_SCHEDULED},
    FeedStatus.ERROR: {FeedStatus.RECONNECT_SCHEDULED},
    FeedStatus.CLOSED: {FeedStatus.RECONNECT_SCHEDULED},
    FeedStatus.RECONNECT_SCHEDULED: {FeedStatus.CONNECTING},
    FeedStatus.SHUTDOWN: set(),
}


@dataclass
class ConnectionState:
    """Single owned record of connection and trading flags, shared by reference."""

    connected: bool = False
    last_message_at: Optional[float] = None
    reconnect_attempts: int = 0
    api_connected: bool = False
    trading_enabled: bool = False
    auto_trading_enabled: bool = False
    status: FeedStatus = FeedStatus.DISCONNECTED
    status_changed_at: float = field(default_factory=time.time)

    def transition(self, new_status: FeedStatus) -> bool:
        """Move the feed state machine; returns False for a transition the machine does not allow."""
        if self.status is FeedStatus.SHUTDOWN:
            return False
        if new_status is not FeedStatus.SHUTDOWN and new_status not in FEED_TRANSITIONS[self.status]:
            return False
        self.status = new_status
        self.status_changed_at = time.time()
        self.connected = new_status is FeedStatus.CONNECTED
        self.refresh_trading_enabled()
        return True

    def set_api_connected(self, healthy: bool) -> bool:
        changed = self.api_connected != healthy
        self.api_connected = healthy
        self.refresh_trading_enabled()
        return changed

    def refresh_trading_enabled(self) -> bool:
        self.trading_enabled = self.connected and self.api_connected
        return self.trading_enabled

    def mark_message(self, now: Optional[float] = None) -> None:
        self.last_message_at = time.monotonic() if now is None else now

    @property
    def is_shutdown(self) -> bool:
        return self.status is FeedStatus.SHUTDOWN

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data
