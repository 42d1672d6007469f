"""
Deck Events - the closed set of notifications the core publishes upward.

Every event is a frozen dataclass tagged with a wire ``TYPE``. Producers
(ProtocolClient, MonitorSession, TransferEngine) publish onto an
``EventChannel``; consumers such as the websocket dispatcher hold an
``EventSubscription`` whose lifetime they control explicitly.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Dict, List, Optional, Tuple

from deck_courier.core.logging_utils import get_module_logger
from deck_courier.core.models import ClipRecord, SlotStatus, TransportStatus

logger = get_module_logger("Events")


@dataclass(frozen=True)
class DeckEvent:
    """Base class; subclasses set ``TYPE`` and implement ``payload``."""
    TYPE: ClassVar[str] = "EVENT"

    @property
    def session_id(self) -> Optional[str]:
        return None

    def payload(self) -> Dict[str, Any]:
        return {}

    def to_message(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"type": self.TYPE}
        message.update(self.payload())
        return message


@dataclass(frozen=True)
class Connected(DeckEvent):
    TYPE: ClassVar[str] = "CONNECTED"
    host: str
    port: int
    model: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        return {"success": True, "ipAddress": self.host, "port": self.port, "model": self.model}


@dataclass(frozen=True)
class Disconnected(DeckEvent):
    TYPE: ClassVar[str] = "DISCONNECTED"
    host: Optional[str]
    reason: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        return {"ipAddress": self.host, "reason": self.reason}


@dataclass(frozen=True)
class ErrorEvent(DeckEvent):
    TYPE: ClassVar[str] = "ERROR"
    message: str
    source: str = ""
    filename: Optional[str] = None
    session: Optional[str] = None

    @property
    def session_id(self) -> Optional[str]:
        return self.session

    def payload(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"message": self.message}
        if self.source:
            data["source"] = self.source
        if self.filename:
            data["filename"] = self.filename
        return data


@dataclass(frozen=True)
class ClipCatalog(DeckEvent):
    TYPE: ClassVar[str] = "CLIP_LIST"
    clips: Tuple[ClipRecord, ...]
    slot: Optional[int] = None

    def payload(self) -> Dict[str, Any]:
        return {"slot": self.slot, "clips": [clip.to_dict() for clip in self.clips]}


@dataclass(frozen=True)
class SlotStatusChanged(DeckEvent):
    TYPE: ClassVar[str] = "SLOT_STATUS"
    status: SlotStatus

    def payload(self) -> Dict[str, Any]:
        return self.status.to_dict()


@dataclass(frozen=True)
class TransportStatusChanged(DeckEvent):
    TYPE: ClassVar[str] = "TRANSPORT_STATUS"
    status: TransportStatus

    def payload(self) -> Dict[str, Any]:
        return self.status.to_dict()


@dataclass(frozen=True)
class MonitoringStarted(DeckEvent):
    TYPE: ClassVar[str] = "MONITORING_STARTED"
    session: str
    drives: Tuple[str, ...]
    destination_path: str
    baseline_count: int = 0

    @property
    def session_id(self) -> Optional[str]:
        return self.session

    def payload(self) -> Dict[str, Any]:
        return {
            "message": "Started monitoring HyperDeck for new files",
            "drives": list(self.drives),
            "destinationPath": self.destination_path,
            "baselineCount": self.baseline_count,
        }


@dataclass(frozen=True)
class FileDetected(DeckEvent):
    TYPE: ClassVar[str] = "FILE_DETECTED"
    file_path: str
    session: Optional[str] = None

    @property
    def session_id(self) -> Optional[str]:
        return self.session

    def payload(self) -> Dict[str, Any]:
        return {"filePath": self.file_path}


@dataclass(frozen=True)
class TransferProgress(DeckEvent):
    TYPE: ClassVar[str] = "TRANSFER_PROGRESS"
    filename: str
    bytes_transferred: int
    total_bytes: Optional[int] = None
    session: Optional[str] = None

    @property
    def session_id(self) -> Optional[str]:
        return self.session

    @property
    def percent(self) -> Optional[float]:
        if not self.total_bytes:
            return None
        return min(100.0, 100.0 * self.bytes_transferred / self.total_bytes)

    def payload(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "bytesTransferred": self.bytes_transferred,
            "totalBytes": self.total_bytes,
            "percent": self.percent,
        }


@dataclass(frozen=True)
class TransferComplete(DeckEvent):
    TYPE: ClassVar[str] = "TRANSFER_COMPLETE"
    filename: str
    destination_path: str
    session: Optional[str] = None

    @property
    def session_id(self) -> Optional[str]:
        return self.session

    def payload(self) -> Dict[str, Any]:
        return {"filename": self.filename, "destinationPath": self.destination_path}


@dataclass(frozen=True)
class MonitoringStopped(DeckEvent):
    TYPE: ClassVar[str] = "MONITORING_STOPPED"
    session: str
    last_transferred_name: Optional[str] = None
    last_transferred_path: Optional[str] = None

    @property
    def session_id(self) -> Optional[str]:
        return self.session

    def payload(self) -> Dict[str, Any]:
        last = None
        if self.last_transferred_name is not None:
            last = {"name": self.last_transferred_name, "path": self.last_transferred_path}
        return {
            "message": "Monitoring stopped and final files transferred",
            "lastTransferredFile": last,
        }


@dataclass(frozen=True)
class FileRenamed(DeckEvent):
    TYPE: ClassVar[str] = "FILE_RENAMED"
    old_name: str
    new_name: str
    path: str
    session: Optional[str] = None

    @property
    def session_id(self) -> Optional[str]:
        return self.session

    def payload(self) -> Dict[str, Any]:
        return {"oldName": self.old_name, "newName": self.new_name, "path": self.path}


EventFilter = Callable[[DeckEvent], bool]


class EventSubscription:
    """A consumer's bounded view of the channel.

    When the queue is full the oldest event is dropped so a stalled consumer
    never blocks producers.
    """

    DEFAULT_MAX_QUEUE = 1000

    def __init__(self, channel: "EventChannel", event_filter: Optional[EventFilter], max_queue: int):
        self._channel = channel
        self._filter = event_filter
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._dropped = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def dropped(self) -> int:
        return self._dropped

    def offer(self, event: DeckEvent) -> None:
        if self._closed:
            return
        if self._filter is not None and not self._filter(event):
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._dropped += 1
            logger.warning("Event queue full, dropped oldest event (total dropped: %d)", self._dropped)
            self._queue.put_nowait(event)

    async def get(self) -> DeckEvent:
        return await self._queue.get()

    def drain(self) -> List[DeckEvent]:
        """Return every queued event without waiting."""
        events: List[DeckEvent] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._channel.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> DeckEvent:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        return await self._queue.get()

    def __enter__(self) -> "EventSubscription":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False


class EventChannel:
    """Fan-out of published events to every open subscription."""

    def __init__(self, max_queue: int = EventSubscription.DEFAULT_MAX_QUEUE):
        self.max_queue = max_queue
        self._subscriptions: List[EventSubscription] = []

    def subscribe(self, event_filter: Optional[EventFilter] = None) -> EventSubscription:
        subscription = EventSubscription(self, event_filter, self.max_queue)
        self._subscriptions.append(subscription)
        logger.debug("Subscription added (total: %d)", len(self._subscriptions))
        return subscription

    def unsubscribe(self, subscription: EventSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
            logger.debug("Subscription removed (total: %d)", len(self._subscriptions))

    def publish(self, event: DeckEvent) -> None:
        logger.debug("Publishing %s", event.TYPE)
        for subscription in list(self._subscriptions):
            subscription.offer(event)

    def publish_threadsafe(self, loop: asyncio.AbstractEventLoop, event: DeckEvent) -> None:
        """Publish from a worker thread (FTP transfers run in one)."""
        loop.call_soon_threadsafe(self.publish, event)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)


def session_filter(session_id: Optional[str]) -> EventFilter:
    """Accept device-wide events plus events of one monitoring session."""

    def _accept(event: DeckEvent) -> bool:
        return event.session_id is None or event.session_id == session_id

    return _accept


__all__ = [
    "DeckEvent",
    "Connected",
    "Disconnected",
    "ErrorEvent",
    "ClipCatalog",
    "SlotStatusChanged",
    "TransportStatusChanged",
    "MonitoringStarted",
    "FileDetected",
    "TransferProgress",
    "TransferComplete",
    "MonitoringStopped",
    "FileRenamed",
    "EventChannel",
    "EventSubscription",
    "session_filter",
]
