"""
System Routes - health and status endpoints.
"""

from aiohttp import web

from ..controller import APIController
from .websocket import WEBSOCKETS_KEY


def setup_system_routes(app: web.Application, controller: APIController) -> None:
    """Register system routes."""
    app.router.add_get("/api/v1/health", health_handler)
    app.router.add_get("/api/v1/status", status_handler)


async def health_handler(request: web.Request) -> web.Response:
    """GET /api/v1/health - Health check."""
    controller: APIController = request.app["controller"]
    result = await controller.health_check()
    result["clients"] = len(request.app[WEBSOCKETS_KEY])
    return web.json_response(result)


async def status_handler(request: web.Request) -> web.Response:
    """GET /api/v1/status - Device connection and monitoring sessions."""
    controller: APIController = request.app["controller"]
    result = await controller.get_status()
    return web.json_response(result)
