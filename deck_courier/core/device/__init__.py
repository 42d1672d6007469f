"""Device control connection: framing, connection state and the protocol client."""

from .client import ProtocolClient
from .protocol import Commands, DeviceResponse, ResponseFramer, ResponseShape
from .state import ConnectionState

__all__ = [
    "Commands",
    "ConnectionState",
    "DeviceResponse",
    "ProtocolClient",
    "ResponseFramer",
    "ResponseShape",
]
