"""
HyperDeck control client.

One ``ProtocolClient`` owns one TCP control connection. The protocol is
half-duplex: every command is written while holding ``_lock`` and the lock is
released only when the framer reports the response complete (or the command
fails), so responses are matched to commands strictly by arrival order.

A background reader task splits the inbound stream into lines and feeds the
``ResponseFramer``. Completed responses resolve the pending future; 5xx
asynchronous blocks are turned into status events.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from deck_courier.core.device.protocol import (
    LINE_TERMINATOR,
    Commands,
    DeviceResponse,
    LineBuffer,
    ResponseFramer,
    ResponseShape,
    parse_slot_status,
    parse_transport_status,
)
from deck_courier.core.device.state import ConnectionEvent, ConnectionInfo, ConnectionState
from deck_courier.core.errors import (
    CommandFailed,
    CommandInProgress,
    DeckCourierError,
    DeviceConnectionError,
    ProtocolError,
    ProtocolTimeout,
)
from deck_courier.core.events import (
    ClipCatalog,
    Connected,
    Disconnected,
    ErrorEvent,
    EventChannel,
    SlotStatusChanged,
    TransportStatusChanged,
)
from deck_courier.core.logging_utils import get_module_logger
from deck_courier.core.models import ClipRecord, DeviceInfo, SlotStatus, TransportStatus
from deck_courier.core.settings import DeckSettings

logger = get_module_logger("ProtocolClient")

READ_CHUNK_SIZE = 4096
CLOSE_TIMEOUT = 1.0

# 5xx notification texts
CONNECTION_INFO = "connection info"
SLOT_INFO = "slot info"
TRANSPORT_INFO = "transport info"


class ProtocolClient:
    """Serialized command execution over the device control connection."""

    def __init__(
        self,
        events: Optional[EventChannel] = None,
        settings: Optional[DeckSettings] = None,
    ):
        self.settings = settings or DeckSettings()
        self.events = events if events is not None else EventChannel()

        self._info = ConnectionInfo()
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task] = None

        self._lines = LineBuffer()
        self._framer = ResponseFramer(on_notification=self._handle_notification)
        self._lock = asyncio.Lock()
        self._connect_lock = asyncio.Lock()
        self._queued = 0
        self._pending: Optional[asyncio.Future] = None

        self._device_info = DeviceInfo()
        self._poll_owners: Dict[str, frozenset] = {}
        self._poll_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Properties

    @property
    def state(self) -> ConnectionState:
        return self._info.state

    @property
    def is_connected(self) -> bool:
        return self._info.state is ConnectionState.CONNECTED

    @property
    def host(self) -> Optional[str]:
        return self._info.host

    @property
    def port(self) -> Optional[int]:
        return self._info.port

    @property
    def device_info(self) -> DeviceInfo:
        return self._device_info

    @property
    def command_in_progress(self) -> bool:
        return self._lock.locked() or self._queued > 0

    @property
    def framer(self) -> ResponseFramer:
        return self._framer

    @property
    def buffered_text(self) -> str:
        return self._lines.pending

    @property
    def polled_slots(self) -> frozenset:
        slots: frozenset = frozenset()
        for owner_slots in self._poll_owners.values():
            slots = slots | owner_slots
        return slots

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def status(self) -> Dict[str, Any]:
        data: Dict[str, Any] = self._info.to_dict()
        data["model"] = self._device_info.model
        data["protocolVersion"] = self._device_info.protocol_version
        data["polling"] = sorted(self.polled_slots) if self.is_polling else []
        return data

    # ------------------------------------------------------------------
    # Connection lifecycle

    async def connect(self, host: str, port: Optional[int] = None) -> None:
        """Open the control connection; raises DeviceConnectionError on failure.

        Connects are serialized; a disconnect that lands while the socket is
        still opening wins and the late socket is closed unused.
        """
        async with self._connect_lock:
            await self._connect(host, port or self.settings.device_port)

    async def _connect(self, host: str, port: int) -> None:
        if self._info.state is not ConnectionState.DISCONNECTED:
            await self.disconnect(reason="Reconnecting")

        self._info.host = host
        self._info.port = port
        self._info.apply(ConnectionEvent.CONNECT_REQUESTED)

        timeout = self.settings.connect_timeout
        try:
            if timeout:
                reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
            else:
                reader, writer = await asyncio.open_connection(host, port)
        except asyncio.CancelledError:
            self._info.apply(ConnectionEvent.CONNECT_FAILED)
            raise
        except (OSError, asyncio.TimeoutError) as exc:
            detail = str(exc) or type(exc).__name__
            self._info.last_error = detail
            self._info.apply(ConnectionEvent.CONNECT_FAILED)
            logger.error("Could not connect to %s:%s: %s", host, port, detail)
            raise DeviceConnectionError(f"Could not connect to {host}:{port}: {detail}") from exc

        if not self._info.apply(ConnectionEvent.SOCKET_OPENED):
            await self._close_writer(writer, host)
            logger.info("Connection to %s:%s cancelled while opening", host, port)
            raise DeviceConnectionError(f"Connection to {host}:{port} cancelled")

        self._lines.clear()
        self._framer.reset()
        self._device_info = DeviceInfo()
        self._reader = reader
        self._writer = writer
        self._reader_task = asyncio.create_task(self._read_loop(reader), name="deck-reader")

        if self._poll_owners:
            self._ensure_poll_task()

        logger.info("Connected to device at %s:%s", host, port)
        self.events.publish(Connected(host=host, port=port, model=self._device_info.model))

    async def disconnect(self, reason: str = "Disconnected by request") -> None:
        """Close the connection. Safe to call when already disconnected."""
        if self._info.state is ConnectionState.DISCONNECTED:
            return
        await self._teardown(ConnectionEvent.DISCONNECT_REQUESTED, reason)

    async def _teardown(self, event: ConnectionEvent, reason: str) -> None:
        current = asyncio.current_task()

        poll_task = self._poll_task
        self._poll_task = None
        reader_task = self._reader_task
        self._reader_task = None

        if self._pending is not None and not self._pending.done():
            self._pending.set_exception(DeviceConnectionError(f"Connection closed: {reason}"))

        self._framer.reset()
        self._lines.clear()

        writer = self._writer
        self._writer = None
        self._reader = None

        host = self._info.host
        self._info.apply(event)

        for task in (poll_task, reader_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task

        if writer is not None:
            await self._close_writer(writer, host)

        logger.info("Disconnected from %s (%s)", host, reason)
        self.events.publish(Disconnected(host=host, reason=reason))

    @staticmethod
    async def _close_writer(writer: asyncio.StreamWriter, host: Optional[str]) -> None:
        with contextlib.suppress(Exception):
            writer.close()
        try:
            await asyncio.wait_for(writer.wait_closed(), timeout=CLOSE_TIMEOUT)
        except (asyncio.TimeoutError, OSError):
            logger.debug("Socket to %s did not close cleanly", host)

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        reason = "Connection closed by device"
        try:
            while True:
                data = await reader.read(READ_CHUNK_SIZE)
                if not data:
                    break
                for line in self._lines.feed(data):
                    logger.debug("<- %s", line)
                    response = self._framer.feed(line)
                    if response is not None:
                        self._resolve(response)
        except asyncio.CancelledError:
            raise
        except (OSError, ConnectionError) as exc:
            reason = f"Read error: {exc}"

        if self._info.state is ConnectionState.CONNECTED:
            logger.warning("Lost connection to %s: %s", self._info.host, reason)
            self._info.last_error = reason
            self.events.publish(ErrorEvent(message=reason, source="device"))
            await self._teardown(ConnectionEvent.SOCKET_CLOSED, reason)

    def _resolve(self, response: DeviceResponse) -> None:
        if self._pending is None or self._pending.done():
            logger.debug("Dropping response with no waiter: %s", response)
            return
        self._pending.set_result(response)

    # ------------------------------------------------------------------
    # Command execution

    def _require_connected(self) -> asyncio.StreamWriter:
        if not self.is_connected or self._writer is None:
            raise DeviceConnectionError("Not connected to a device")
        return self._writer

    async def send_command(
        self,
        line: str,
        shape: ResponseShape = ResponseShape.SINGLE_LINE,
        timeout: Optional[float] = None,
    ) -> DeviceResponse:
        """Issue ``line`` now; raises CommandInProgress if the link is busy."""
        self._require_connected()
        if self.command_in_progress:
            raise CommandInProgress(self._framer.pending_command)
        async with self._lock:
            return await self._issue(line, shape, timeout=timeout)

    async def execute(
        self,
        line: str,
        shape: ResponseShape = ResponseShape.SINGLE_LINE,
        timeout: Optional[float] = None,
    ) -> DeviceResponse:
        """Wait for the link to be free, then issue ``line``."""
        self._require_connected()
        async with self._queue_for_link():
            return await self._issue(line, shape, timeout=timeout)

    @contextlib.asynccontextmanager
    async def _queue_for_link(self) -> AsyncIterator[None]:
        # Queued callers count as busy so send_command never slips in ahead of them
        self._queued += 1
        try:
            await self._lock.acquire()
        finally:
            self._queued -= 1
        try:
            yield
        finally:
            self._lock.release()

    async def _issue(
        self,
        line: str,
        shape: ResponseShape,
        slot: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> DeviceResponse:
        # Caller holds self._lock
        writer = self._require_connected()
        self._framer.expect(line, shape, slot=slot)
        self._pending = asyncio.get_running_loop().create_future()
        completed = False
        try:
            logger.debug("-> %s", line)
            try:
                writer.write(f"{line}{LINE_TERMINATOR}".encode("utf-8"))
                await writer.drain()
            except (OSError, ConnectionError) as exc:
                raise DeviceConnectionError(f"Write of '{line}' failed: {exc}") from exc

            if timeout:
                try:
                    response = await asyncio.wait_for(self._pending, timeout=timeout)
                except asyncio.TimeoutError:
                    raise ProtocolTimeout(f"No complete response to '{line}' within {timeout:g}s") from None
            else:
                response = await self._pending
            completed = True
        finally:
            self._pending = None
            if not completed:
                self._framer.reset()

        if response.is_error:
            raise CommandFailed(line, response.code, response.text)
        return response

    # ------------------------------------------------------------------
    # Queries

    async def get_clip_list(self, slot: Optional[int] = None) -> List[ClipRecord]:
        """Fetch the clip catalog, optionally selecting ``slot`` first."""
        self._require_connected()
        timeout = self.settings.clip_list_timeout
        async with self._queue_for_link():
            if slot is not None:
                await self._issue(Commands.select_slot(slot), ResponseShape.SINGLE_LINE)
            response = await self._issue(
                Commands.clips_get(), ResponseShape.FRAMED_BLOCK, slot=slot, timeout=timeout
            )

        if not response.is_clip_listing:
            raise ProtocolError(f"Unexpected response to '{Commands.clips_get()}': {response}")

        clips = tuple(response.clips)
        logger.info("Clip catalog%s: %d clips", f" for slot {slot}" if slot else "", len(clips))
        self.events.publish(ClipCatalog(clips=clips, slot=slot))
        return list(clips)

    async def slot_info(self, slot: int) -> SlotStatus:
        response = await self.execute(Commands.slot_info(slot))
        return parse_slot_status(response, slot)

    async def transport_info(self) -> TransportStatus:
        response = await self.execute(Commands.transport_info())
        return parse_transport_status(response)

    # ------------------------------------------------------------------
    # Status polling

    def start_polling(self, slots: Iterable[int], owner: str = "default") -> None:
        """Register ``owner``'s interest in ``slots`` and make sure the poll loop runs."""
        self._poll_owners[owner] = frozenset(slots)
        logger.debug("Polling registration %s: %s", owner, sorted(self._poll_owners[owner]))
        if self.is_connected:
            self._ensure_poll_task()

    async def stop_polling(self, owner: str = "default") -> None:
        """Drop ``owner``'s registration; the loop stops when nobody is left."""
        self._poll_owners.pop(owner, None)
        if self._poll_owners:
            return
        task = self._poll_task
        self._poll_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            logger.debug("Status polling stopped")

    def _ensure_poll_task(self) -> None:
        if self.is_polling:
            return
        self._poll_task = asyncio.create_task(self._poll_loop(), name="deck-status-poll")

    async def _poll_loop(self) -> None:
        interval = self.settings.poll_interval
        logger.debug("Status polling every %.1fs", interval)
        while self.is_connected:
            await self.poll_once()
            await asyncio.sleep(interval)

    async def poll_once(self) -> None:
        """One tick: slot info for every registered slot, then transport info."""
        for slot in sorted(self.polled_slots):
            try:
                status = await self.slot_info(slot)
            except DeckCourierError as exc:
                self._report_poll_failure(f"Slot {slot} status poll failed: {exc}")
                continue
            self.events.publish(SlotStatusChanged(status=status))

        try:
            transport = await self.transport_info()
        except DeckCourierError as exc:
            self._report_poll_failure(f"Transport status poll failed: {exc}")
            return
        self.events.publish(TransportStatusChanged(status=transport))

    def _report_poll_failure(self, message: str) -> None:
        logger.warning(message)
        self.events.publish(ErrorEvent(message=message, source="poll"))

    # ------------------------------------------------------------------
    # Asynchronous notifications

    def _handle_notification(self, response: DeviceResponse) -> None:
        text = response.text.lower()
        if text.startswith(CONNECTION_INFO):
            self._device_info = DeviceInfo(fields=dict(response.fields))
            logger.info(
                "Device %s (protocol %s)",
                self._device_info.model or "unknown",
                self._device_info.protocol_version or "unknown",
            )
        elif text.startswith(SLOT_INFO) and response.fields:
            slot_id = response.fields.get("slot id", "0")
            slot = int(slot_id) if slot_id.isdigit() else 0
            self.events.publish(SlotStatusChanged(status=parse_slot_status(response, slot)))
        elif text.startswith(TRANSPORT_INFO) and response.fields:
            self.events.publish(TransportStatusChanged(status=parse_transport_status(response)))
        else:
            logger.debug("Unhandled notification %s", response)


__all__ = ["ProtocolClient"]
