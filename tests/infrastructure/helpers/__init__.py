"""Test helpers for the Deck Courier test suite.

Usage:
    from tests.infrastructure.helpers import next_event, events_of
"""

from .events import events_of, next_event

__all__ = ["events_of", "next_event"]
