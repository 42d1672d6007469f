"""
Websocket Route - ``/ws`` carries dispatcher requests and relayed events.
"""

import asyncio

from aiohttp import WSMsgType, web

from deck_courier.core.logging_utils import get_module_logger

from ..controller import APIController
from ..dispatcher import MessageDispatcher


logger = get_module_logger("WebsocketRoute")

HEARTBEAT_SECONDS = 30.0

# Application key for open client sockets, each mapped to a "released" event
WEBSOCKETS_KEY = "websockets"


def setup_websocket_routes(app: web.Application, controller: APIController) -> None:
    app.router.add_get("/ws", websocket_handler)


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    """GET /ws - One dispatcher per connected client."""
    controller: APIController = request.app["controller"]
    ws = web.WebSocketResponse(heartbeat=HEARTBEAT_SECONDS)
    await ws.prepare(request)
    sockets = request.app[WEBSOCKETS_KEY]
    released = asyncio.Event()
    sockets[ws] = released

    async def send(message: dict) -> None:
        if ws.closed:
            raise ConnectionResetError("websocket closed")
        await ws.send_json(message)

    dispatcher = MessageDispatcher(controller, send)
    dispatcher.open()
    logger.info("Websocket client %s from %s", dispatcher.client_id, request.remote)

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                await dispatcher.handle_text(msg.data)
            elif msg.type == WSMsgType.ERROR:
                logger.warning("Websocket error for %s: %s", dispatcher.client_id, ws.exception())
    finally:
        try:
            await dispatcher.close()
        finally:
            sockets.pop(ws, None)
            released.set()

    return ws
