"""Core of Deck Courier: device client, monitoring, transfer and events."""

from .errors import DeckCourierError
from .events import EventChannel
from .settings import DeckSettings, load_settings

__all__ = ["DeckCourierError", "DeckSettings", "EventChannel", "load_settings"]
