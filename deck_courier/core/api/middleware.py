"""
API Middleware - access control and error formatting for the HTTP surface.
"""

import traceback
from typing import Callable

from aiohttp import web

from deck_courier.core.errors import DeckCourierError, NotFound, PreconditionError
from deck_courier.core.logging_utils import get_module_logger


logger = get_module_logger("APIMiddleware")

LOCALHOST_IPS = {"127.0.0.1", "::1", "::ffff:127.0.0.1"}

# Debug mode flag - set via APIServer
_debug_mode: bool = False


def set_debug_mode(enabled: bool) -> None:
    """Enable or disable verbose error responses."""
    global _debug_mode
    _debug_mode = enabled


def create_error_response(code: str, message: str, status: int = 400, details: dict = None) -> web.Response:
    """Create standardized error response."""
    error = {"error": {"code": code, "message": message}, "status": status}
    if details:
        error["error"]["details"] = details
    return web.json_response(error, status=status)


@web.middleware
async def localhost_only_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    """Reject requests from any peer other than the local host."""
    peername = request.transport.get_extra_info("peername") if request.transport else None
    if peername:
        remote_ip = peername[0]
        if remote_ip not in LOCALHOST_IPS:
            logger.warning("Rejected request from non-localhost IP: %s", remote_ip)
            return create_error_response(
                "ACCESS_DENIED", "API access is restricted to localhost only", status=403
            )
    return await handler(request)


@web.middleware
async def error_handling_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    """
    Format every failure as ``{"error": {"code", "message"}, "status"}``.
    """
    try:
        return await handler(request)
    except web.HTTPException as e:
        return create_error_response(
            e.reason.upper().replace(" ", "_") if e.reason else "HTTP_ERROR",
            e.text or str(e),
            status=e.status,
        )
    except NotFound as e:
        return create_error_response("NOT_FOUND", str(e), status=404)
    except PreconditionError as e:
        logger.warning("Precondition failed: %s", e)
        return create_error_response("PRECONDITION_FAILED", str(e), status=409)
    except DeckCourierError as e:
        logger.error("Device error: %s", e)
        return create_error_response("DEVICE_ERROR", str(e), status=502)
    except Exception as e:
        tb = traceback.format_exc()
        logger.error("Unexpected error: %s\n%s", e, tb)
        details = {"type": type(e).__name__, "message": str(e)}
        if _debug_mode:
            details["traceback"] = tb.split("\n")
        return create_error_response("INTERNAL_ERROR", "An unexpected error occurred", status=500, details=details)
