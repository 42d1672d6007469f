"""
Connection state for the device control link.

Transitions are table driven; anything not listed is rejected and logged so a
late socket callback cannot resurrect a connection that was torn down.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

from deck_courier.core.logging_utils import get_module_logger

logger = get_module_logger("ConnectionState")


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ConnectionEvent(Enum):
    CONNECT_REQUESTED = "connect_requested"
    SOCKET_OPENED = "socket_opened"
    CONNECT_FAILED = "connect_failed"
    DISCONNECT_REQUESTED = "disconnect_requested"
    SOCKET_CLOSED = "socket_closed"


# (current_state, event) -> new_state
STATE_TRANSITIONS: Dict[Tuple[ConnectionState, ConnectionEvent], ConnectionState] = {
    (ConnectionState.DISCONNECTED, ConnectionEvent.CONNECT_REQUESTED): ConnectionState.CONNECTING,
    (ConnectionState.CONNECTING, ConnectionEvent.SOCKET_OPENED): ConnectionState.CONNECTED,
    (ConnectionState.CONNECTING, ConnectionEvent.CONNECT_FAILED): ConnectionState.DISCONNECTED,
    (ConnectionState.CONNECTING, ConnectionEvent.DISCONNECT_REQUESTED): ConnectionState.DISCONNECTED,

    (ConnectionState.CONNECTED, ConnectionEvent.DISCONNECT_REQUESTED): ConnectionState.DISCONNECTED,
    (ConnectionState.CONNECTED, ConnectionEvent.SOCKET_CLOSED): ConnectionState.DISCONNECTED,
}


@dataclass
class ConnectionInfo:
    """Where the link points and what state it is in."""
    host: Optional[str] = None
    port: Optional[int] = None
    state: ConnectionState = ConnectionState.DISCONNECTED
    state_entered_at: float = field(default_factory=time.time)
    last_error: Optional[str] = None

    def time_in_state(self) -> float:
        return time.time() - self.state_entered_at

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def apply(self, event: ConnectionEvent) -> bool:
        """Apply ``event``; return False if it is not valid in this state."""
        new_state = STATE_TRANSITIONS.get((self.state, event))
        if new_state is None:
            logger.debug("Ignoring %s while %s", event.value, self.state.value)
            return False

        old_state = self.state
        self.state = new_state
        self.state_entered_at = time.time()
        if new_state is ConnectionState.CONNECTED:
            self.last_error = None
        logger.info("%s: %s -> %s (event: %s)", self.address, old_state.value, new_state.value, event.value)
        return True

    def to_dict(self) -> Dict[str, object]:
        return {
            "host": self.host,
            "port": self.port,
            "state": self.state.value,
            "lastError": self.last_error,
        }


__all__ = ["ConnectionEvent", "ConnectionInfo", "ConnectionState", "STATE_TRANSITIONS"]
