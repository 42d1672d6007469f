"""
API route modules.

- system: Health and status
- websocket: Dispatcher requests and event relay
"""

from .system import setup_system_routes
from .websocket import setup_websocket_routes


def setup_all_routes(app, controller):
    """Register all API routes with the application."""
    setup_system_routes(app, controller)
    setup_websocket_routes(app, controller)


__all__ = ["setup_all_routes"]
