"""Helpers for waiting on events published to an EventChannel."""

from __future__ import annotations

import asyncio
from typing import List, Type, TypeVar

from deck_courier.core.events import DeckEvent, EventSubscription

E = TypeVar("E", bound=DeckEvent)


async def next_event(subscription: EventSubscription, event_type: Type[E], timeout: float = 2.0) -> E:
    """Return the next event of ``event_type``, skipping any others."""

    async def _wait() -> E:
        while True:
            event = await subscription.get()
            if isinstance(event, event_type):
                return event

    return await asyncio.wait_for(_wait(), timeout=timeout)


def events_of(subscription: EventSubscription, event_type: Type[E]) -> List[E]:
    """Drain the subscription and keep only ``event_type`` events."""
    return [event for event in subscription.drain() if isinstance(event, event_type)]
