"""
API Server - aiohttp front end for Deck Courier.

Serves ``/ws`` (one MessageDispatcher per dashboard client) and the
health/status endpoints on the same event loop as the device client.

The server owns the open websockets. Stopping it closes every socket first,
which releases each client's monitoring session through its final check, and
only then shuts the controller down so the device link is dropped last.
"""

import asyncio
from typing import Dict, Optional

from aiohttp import WSCloseCode, web

from deck_courier.core.logging_utils import get_module_logger

from .controller import APIController
from .middleware import (
    error_handling_middleware,
    localhost_only_middleware,
    set_debug_mode,
)
from .routes import setup_all_routes
from .routes.websocket import WEBSOCKETS_KEY


logger = get_module_logger("APIServer")

SHUTDOWN_MESSAGE = b"Deck Courier shutting down"


class APIServer:
    """Websocket dispatcher plus status endpoints, bound to one controller."""

    def __init__(
        self,
        controller: APIController,
        host: str = "127.0.0.1",
        port: int = 3001,
        localhost_only: bool = True,
        debug: bool = False,
    ):
        self.controller = controller
        self.host = host
        self.port = port
        self.localhost_only = localhost_only
        self.debug = debug

        self._websockets: Dict[web.WebSocketResponse, asyncio.Event] = {}
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

        set_debug_mode(debug)

    @property
    def client_count(self) -> int:
        return len(self._websockets)

    def create_app(self) -> web.Application:
        """Build the application; shutdown hooks close clients, then the controller."""
        middlewares = [error_handling_middleware]
        if self.localhost_only:
            middlewares.insert(0, localhost_only_middleware)

        app = web.Application(middlewares=middlewares)
        app["controller"] = self.controller
        app[WEBSOCKETS_KEY] = self._websockets
        app.on_shutdown.append(self._close_websockets)
        app.on_cleanup.append(self._shutdown_controller)

        setup_all_routes(app, self.controller)
        return app

    async def _close_websockets(self, app: web.Application) -> None:
        sockets = list(app[WEBSOCKETS_KEY].items())
        if not sockets:
            return
        logger.info("Closing %d websocket client(s)", len(sockets))
        for ws, _ in sockets:
            await ws.close(code=WSCloseCode.GOING_AWAY, message=SHUTDOWN_MESSAGE)
        # Each handler returns only after its client's final check
        await asyncio.gather(*(released.wait() for _, released in sockets))

    async def _shutdown_controller(self, app: web.Application) -> None:
        # Any session left without a socket still gets its final check here
        await self.controller.shutdown()

    async def start(self) -> None:
        """Start serving (non-blocking)."""
        if self.is_running:
            logger.warning("API server already running")
            return

        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()

        mode_info = " (debug mode)" if self.debug else ""
        logger.info("Dispatcher listening on ws://%s:%d/ws%s", self.host, self.port, mode_info)

    async def stop(self) -> None:
        """Close clients, run every session's final check, release the device."""
        if not self.is_running:
            return

        logger.info("Stopping API server (%d client(s) attached)", self.client_count)
        runner = self._runner
        self._runner = None
        self._site = None
        await runner.cleanup()
        logger.info("API server stopped")

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"
