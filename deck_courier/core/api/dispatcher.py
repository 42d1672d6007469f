"""
Message Dispatcher - JSON request routing for one websocket client.

Each inbound ``{"type": ...}`` message is mapped to a controller call. Core
events reach the client through an ``EventSubscription`` pumped onto the
socket; handlers only reply directly with ``FILE_LIST``, ``TRANSFER_STATUS``
and ``ERROR``.
"""

import asyncio
import contextlib
import json
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

from deck_courier.core.errors import DeckCourierError
from deck_courier.core.events import EventSubscription
from deck_courier.core.logging_utils import get_module_logger

from .controller import APIController


logger = get_module_logger("MessageDispatcher")

SendCallback = Callable[[Dict[str, Any]], Awaitable[None]]
Handler = Callable[[Dict[str, Any]], Awaitable[Optional[Dict[str, Any]]]]


def error_message(message: str) -> Dict[str, Any]:
    return {"type": "ERROR", "message": message}


class MessageDispatcher:
    """Routes one client's requests and relays the events it is entitled to."""

    def __init__(self, controller: APIController, send: SendCallback, client_id: Optional[str] = None):
        self.controller = controller
        self.client_id = client_id or uuid.uuid4().hex[:8]
        self._send = send
        self._subscription: Optional[EventSubscription] = None
        self._pump_task: Optional[asyncio.Task] = None

        self._handlers: Dict[str, Handler] = {
            "CONNECT_HYPERDECK": self._connect,
            "DISCONNECT_HYPERDECK": self._disconnect,
            "GET_CLIP_LIST": self._get_clip_list,
            "START_MONITORING": self._start_monitoring,
            "FINAL_CHECK": self._final_check,
            "STOP_MONITORING": self._stop_monitoring,
            "GET_FILE_LIST": self._get_file_list,
            "RENAME_FILE": self._rename_file,
        }

    @property
    def message_types(self):
        return sorted(self._handlers)

    # ------------------------------------------------------------------
    # Lifecycle

    def open(self) -> None:
        if self._subscription is not None:
            return
        self._subscription = self.controller.subscribe(self.client_id)
        self._pump_task = asyncio.create_task(self._pump_events(), name=f"ws-pump-{self.client_id}")
        logger.info("Client %s connected", self.client_id)

    async def close(self) -> None:
        """Stop this client's session (with final check) and detach from events."""
        await self.controller.release_client(self.client_id)

        if self._subscription is not None:
            self._subscription.close()
        task = self._pump_task
        self._pump_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("Client %s disconnected", self.client_id)

    async def _pump_events(self) -> None:
        async for event in self._subscription:
            try:
                await self._send(event.to_message())
            except ConnectionError as exc:
                logger.debug("Dropping %s for %s: %s", event.TYPE, self.client_id, exc)

    # ------------------------------------------------------------------
    # Dispatch

    async def handle_text(self, text: str) -> None:
        try:
            message = json.loads(text)
        except ValueError:
            await self._send(error_message("Invalid message: expected JSON"))
            return
        if not isinstance(message, dict):
            await self._send(error_message("Invalid message: expected a JSON object"))
            return
        await self.handle(message)

    async def handle(self, message: Dict[str, Any]) -> None:
        message_type = message.get("type")
        logger.debug("Received %s from %s", message_type, self.client_id)

        handler = self._handlers.get(message_type)
        if handler is None:
            await self._send(error_message("Unknown message type"))
            return

        try:
            reply = await handler(message)
        except DeckCourierError as exc:
            logger.warning("%s failed: %s", message_type, exc)
            reply = error_message(str(exc))
        except (ValueError, TypeError) as exc:
            logger.warning("Invalid %s request: %s", message_type, exc)
            reply = error_message(f"Invalid request: {exc}")
        except Exception as exc:
            logger.exception("Unexpected error handling %s: %s", message_type, exc)
            reply = error_message("Internal server error")

        if reply is not None:
            await self._send(reply)

    # ------------------------------------------------------------------
    # Handlers

    async def _connect(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            await self.controller.connect_device(message.get("ipAddress", ""))
        except DeckCourierError as exc:
            return error_message(f"Failed to connect to HyperDeck: {exc}")
        return None

    async def _disconnect(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        await self.controller.disconnect_device()
        return None

    async def _get_clip_list(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        slot = message.get("slot")
        await self.controller.get_clip_list(int(slot) if slot is not None else None)
        return None

    async def _start_monitoring(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            await self.controller.start_monitoring(
                self.client_id, message.get("drives"), message.get("destinationPath", "")
            )
        except DeckCourierError as exc:
            return error_message(f"Failed to start monitoring: {exc}")
        return None

    async def _final_check(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        report = await self.controller.final_check(self.client_id)
        return {
            "type": "TRANSFER_STATUS",
            "message": "Final check complete",
            "lastTransferredFile": report.to_dict(),
        }

    async def _stop_monitoring(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if self.controller.get_session(self.client_id) is None:
            return None
        await self._send({"type": "TRANSFER_STATUS", "message": "Initiating final transfer check..."})
        try:
            await self.controller.stop_monitoring(self.client_id)
        except DeckCourierError as exc:
            # The session has already published this failure as an ERROR event
            logger.debug("Stop for %s reported failure: %s", self.client_id, exc)
        return None

    async def _get_file_list(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        clips = await self.controller.get_file_list(message.get("drives"), client_id=self.client_id)
        return {"type": "FILE_LIST", "files": [clip.to_dict() for clip in clips]}

    async def _rename_file(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        await self.controller.rename_file(
            message.get("oldPath", ""), message.get("newName", ""), client_id=self.client_id
        )
        return None
