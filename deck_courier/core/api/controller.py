"""
API Controller - the object the websocket dispatcher and HTTP routes call.

Holds the single ProtocolClient and TransferEngine for this process plus one
MonitorSession per connected dispatcher client. All sessions share the one
control connection; file retrieval opens its own FTP sessions.
"""

import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from deck_courier.core.device.client import ProtocolClient
from deck_courier.core.errors import DeckCourierError, PreconditionError
from deck_courier.core.events import EventChannel, EventSubscription, session_filter
from deck_courier.core.logging_utils import get_module_logger
from deck_courier.core.models import ClipRecord, RemoteClip, StopReport, normalize_drives
from deck_courier.core.monitor.session import MonitorSession
from deck_courier.core.settings import DeckSettings
from deck_courier.core.transfer.engine import TransferEngine


logger = get_module_logger("APIController")

DEFAULT_SLOTS = frozenset({1, 2})


class APIController:
    """
    Thin coordination layer over the device client, transfer engine and
    monitoring sessions.
    """

    def __init__(
        self,
        client: ProtocolClient,
        engine: TransferEngine,
        events: Optional[EventChannel] = None,
        settings: Optional[DeckSettings] = None,
    ):
        self.client = client
        self.engine = engine
        self.events = events if events is not None else client.events
        self.settings = settings or client.settings
        self._sessions: Dict[str, MonitorSession] = {}

    # =========================================================================
    # System
    # =========================================================================

    async def health_check(self) -> Dict[str, Any]:
        """Check system health."""
        return {
            "status": "ok",
            "timestamp": datetime.datetime.now().isoformat(),
            "api_version": "v1",
        }

    async def get_status(self) -> Dict[str, Any]:
        return {
            "device": self.client.status(),
            "file_service_host": self.engine.host,
            "sessions": [session.status() for session in self._sessions.values()],
            "transfers": [job.to_dict() for job in self.engine.recent_jobs],
            "subscribers": self.events.subscriber_count,
        }

    def subscribe(self, client_id: str) -> EventSubscription:
        """Events for one dispatcher client: device-wide plus its own session."""
        return self.events.subscribe(session_filter(client_id))

    # =========================================================================
    # Device
    # =========================================================================

    async def connect_device(self, host: str) -> None:
        if not host:
            raise PreconditionError("An IP address is required")
        await self.client.connect(host)
        self.engine.host = host

    async def disconnect_device(self) -> None:
        await self.client.disconnect()

    async def get_clip_list(self, slot: Optional[int] = None) -> List[ClipRecord]:
        return await self.client.get_clip_list(slot)

    async def get_file_list(self, drives: Any = None, client_id: Optional[str] = None) -> List[RemoteClip]:
        slots = normalize_drives(drives) if drives else frozenset()
        if not slots:
            session = self._sessions.get(client_id) if client_id else None
            slots = session.slots if session is not None and session.slots else DEFAULT_SLOTS
        return await self.engine.list_clips(slots)

    async def rename_file(self, old_path: str, new_name: str, client_id: Optional[str] = None) -> Path:
        return await self.engine.rename(old_path, new_name, session=client_id)

    # =========================================================================
    # Monitoring
    # =========================================================================

    def get_session(self, client_id: str) -> Optional[MonitorSession]:
        return self._sessions.get(client_id)

    async def start_monitoring(self, client_id: str, drives: Any, destination_path: str) -> MonitorSession:
        if not self.engine.host:
            raise PreconditionError("Please connect to HyperDeck first")
        session = self._sessions.get(client_id)
        if session is None:
            session = MonitorSession(
                self.engine,
                client=self.client,
                events=self.events,
                settings=self.settings,
                session_id=client_id,
            )
            self._sessions[client_id] = session
        await session.start(drives, destination_path)
        return session

    async def final_check(self, client_id: str) -> StopReport:
        session = self._sessions.get(client_id)
        if session is None:
            raise PreconditionError("Monitoring is not active")
        return await session.final_check()

    async def stop_monitoring(self, client_id: str) -> StopReport:
        session = self._sessions.pop(client_id, None)
        if session is None:
            return StopReport()
        return await session.stop()

    async def release_client(self, client_id: str) -> None:
        """A dispatcher client went away; stop its session with a final check."""
        try:
            await self.stop_monitoring(client_id)
        except DeckCourierError as exc:
            logger.error("Final check for departing client %s failed: %s", client_id, exc)
        except Exception:
            logger.exception("Unexpected error stopping session for %s", client_id)

    async def shutdown(self) -> None:
        """Stop every session (each runs its final check), then disconnect."""
        try:
            for client_id in list(self._sessions):
                await self.release_client(client_id)
        finally:
            await self.client.disconnect(reason="Shutting down")
