"""
Dispatcher surface for Deck Courier.

A websocket at ``/ws`` accepts ``{"type": ...}`` requests and relays core
events; ``/api/v1/health`` and ``/api/v1/status`` report liveness and state.

Usage:
    python -m deck_courier --api-port 3001
"""

from .controller import APIController
from .dispatcher import MessageDispatcher
from .server import APIServer

__all__ = ["APIController", "APIServer", "MessageDispatcher"]
