"""
HyperDeck control protocol - line splitting and response framing.

The device answers every command with a numeric status line. Status lines
ending in ``:`` open a multi-line response:

    202 slot info:          key/value block, ends at the next blank line
    slot id: 1
    status: mounted

    205 clips info:         framed block, count line then exactly N clips
    clip count: 2
    1: A_0001.mp4 00:00:00:00 00:00:10:00
    2: A_0002.mp4 00:00:10:00 00:00:05:12

Codes 500-599 are asynchronous (the ``500 connection info:`` banner, transport
notifications) and never answer the outstanding command.

``ResponseFramer`` holds the framing state as an explicit variant:
``Idle | AwaitingSingleLine | AwaitingFields | AwaitingFramedBlock``.
``reset()`` always returns it to ``Idle`` so an aborted fetch cannot bleed
into the next command.
"""

from __future__ import annotations

import codecs
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

from deck_courier.core.errors import CommandInProgress, ProtocolParseAnomaly
from deck_courier.core.logging_utils import get_module_logger
from deck_courier.core.models import ClipRecord, SlotState, SlotStatus, TransportStatus

logger = get_module_logger("ProtocolFramer")

LINE_TERMINATOR = "\r\n"

STATUS_LINE_RE = re.compile(r"^(\d{3}) (.+)$")
CLIP_COUNT_RE = re.compile(r"^clip count:\s*(\d+)\s*$", re.IGNORECASE)
_TIMECODE = r"\d{2}:\d{2}:\d{2}[:;.]\d{2}"
CLIP_LINE_RE = re.compile(rf"^(\d+):\s+(.+?)\s+({_TIMECODE})\s+({_TIMECODE})\s*$")

FIRST_ERROR_CODE = 100
FIRST_SUCCESS_CODE = 200
FIRST_ASYNC_CODE = 500
CLIPS_INFO_TEXT = "clips info"


class ResponseShape(Enum):
    SINGLE_LINE = "single_line"
    FRAMED_BLOCK = "framed_block"


class Commands:
    """Builders for the protocol commands this client issues."""

    @staticmethod
    def select_slot(slot: int) -> str:
        return f"slot select: slot id: {slot}"

    @staticmethod
    def clips_get() -> str:
        return "clips get"

    @staticmethod
    def slot_info(slot: int) -> str:
        return f"slot info: slot id: {slot}"

    @staticmethod
    def transport_info() -> str:
        return "transport info"

    @staticmethod
    def ping() -> str:
        return "ping"


@dataclass
class DeviceResponse:
    """A complete response: status line plus any block content."""
    code: int
    text: str
    fields: Dict[str, str] = field(default_factory=dict)
    clips: List[ClipRecord] = field(default_factory=list)
    expected_count: Optional[int] = None

    @property
    def is_error(self) -> bool:
        return FIRST_ERROR_CODE <= self.code < FIRST_SUCCESS_CODE

    @property
    def is_async(self) -> bool:
        return self.code >= FIRST_ASYNC_CODE

    @property
    def is_clip_listing(self) -> bool:
        return self.text.lower().startswith(CLIPS_INFO_TEXT)

    def __str__(self) -> str:
        return f"{self.code} {self.text}"


# ----------------------------------------------------------------------
# Framing states


@dataclass(frozen=True)
class Idle:
    pass


@dataclass
class AwaitingSingleLine:
    command: str
    shape: ResponseShape
    slot: Optional[int] = None


@dataclass
class AwaitingFields:
    command: str
    response: DeviceResponse


@dataclass
class AwaitingFramedBlock:
    command: str
    response: DeviceResponse
    slot: Optional[int] = None
    expected_count: Optional[int] = None

    @property
    def collected(self) -> List[ClipRecord]:
        return self.response.clips


FramerState = Union[Idle, AwaitingSingleLine, AwaitingFields, AwaitingFramedBlock]
NotificationCallback = Callable[[DeviceResponse], None]


class LineBuffer:
    """Accumulates raw bytes and yields complete lines.

    CRLF is the protocol terminator; a bare LF is accepted too. Multi-byte
    characters split across reads are reassembled by the incremental decoder.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, data: bytes) -> List[str]:
        self._pending += self._decoder.decode(data)
        if "\n" not in self._pending:
            return []
        *complete, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in complete]

    def clear(self) -> None:
        self._decoder.reset()
        self._pending = ""


def parse_field(line: str) -> Optional[tuple]:
    if ":" not in line:
        return None
    key, value = line.split(":", 1)
    return key.strip().lower(), value.strip()


def parse_clip_line(line: str, slot: Optional[int] = None) -> Optional[ClipRecord]:
    match = CLIP_LINE_RE.match(line)
    if not match:
        return None
    return ClipRecord(
        id=int(match.group(1)),
        name=match.group(2),
        start_timecode=match.group(3),
        duration=match.group(4),
        slot=slot,
    )


class ResponseFramer:
    """Turns a stream of lines into responses for one outstanding command."""

    def __init__(self, on_notification: Optional[NotificationCallback] = None):
        self._state: FramerState = Idle()
        self._async_block: Optional[DeviceResponse] = None
        self._on_notification = on_notification
        self.anomaly_count = 0

    @property
    def state(self) -> FramerState:
        return self._state

    @property
    def idle(self) -> bool:
        return isinstance(self._state, Idle)

    @property
    def pending_command(self) -> Optional[str]:
        if isinstance(self._state, Idle):
            return None
        return self._state.command

    def expect(self, command: str, shape: ResponseShape, slot: Optional[int] = None) -> None:
        """Arm the framer for the response to ``command``."""
        if not self.idle:
            raise CommandInProgress(self.pending_command)
        self._state = AwaitingSingleLine(command=command, shape=shape, slot=slot)

    def reset(self) -> None:
        """Discard any partial response and return to ``Idle``."""
        if not self.idle:
            logger.debug("Discarding partial response state %s", type(self._state).__name__)
        self._state = Idle()
        self._async_block = None

    def feed(self, line: str) -> Optional[DeviceResponse]:
        """Consume one line; return the response once it is complete."""
        if self._async_block is not None:
            self._feed_async_block(line)
            return None

        status = STATUS_LINE_RE.match(line)
        if status and int(status.group(1)) >= FIRST_ASYNC_CODE:
            self._start_async_block(int(status.group(1)), status.group(2))
            return None

        state = self._state
        if isinstance(state, Idle):
            if line:
                self._anomaly(line, "line received with no command outstanding", quiet=True)
            return None
        if isinstance(state, AwaitingSingleLine):
            return self._feed_status(state, line, status)
        if isinstance(state, AwaitingFields):
            return self._feed_fields(state, line)
        return self._feed_framed(state, line)

    # ------------------------------------------------------------------
    # Per-state handlers

    def _feed_status(self, state: AwaitingSingleLine, line: str, status) -> Optional[DeviceResponse]:
        if not line:
            return None
        if status is None:
            self._anomaly(line, f"expected status line for '{state.command}'")
            return None

        code = int(status.group(1))
        text = status.group(2).strip()
        opens_block = text.endswith(":")
        response = DeviceResponse(code=code, text=text.rstrip(":").strip())

        if response.is_error or not opens_block:
            return self._complete(response)

        if response.is_clip_listing:
            self._state = AwaitingFramedBlock(command=state.command, response=response, slot=state.slot)
        else:
            self._state = AwaitingFields(command=state.command, response=response)
        return None

    def _feed_fields(self, state: AwaitingFields, line: str) -> Optional[DeviceResponse]:
        if not line:
            return self._complete(state.response)
        parsed = parse_field(line)
        if parsed is None:
            self._anomaly(line, f"malformed field in '{state.response}' block")
            return None
        key, value = parsed
        state.response.fields[key] = value
        return None

    def _feed_framed(self, state: AwaitingFramedBlock, line: str) -> Optional[DeviceResponse]:
        if not line:
            return None

        if state.expected_count is None:
            count = CLIP_COUNT_RE.match(line)
            if count is None:
                self._anomaly(line, "expected clip count line")
                return None
            state.expected_count = int(count.group(1))
            state.response.expected_count = state.expected_count
            if state.expected_count == 0:
                return self._complete(state.response)
            return None

        clip = parse_clip_line(line, slot=state.slot)
        if clip is None:
            self._anomaly(line, "unrecognised line inside clip listing")
            return None
        state.collected.append(clip)
        if len(state.collected) >= state.expected_count:
            return self._complete(state.response)
        return None

    def _complete(self, response: DeviceResponse) -> DeviceResponse:
        self._state = Idle()
        return response

    # ------------------------------------------------------------------
    # Asynchronous blocks (5xx)

    def _start_async_block(self, code: int, text: str) -> None:
        text = text.strip()
        response = DeviceResponse(code=code, text=text.rstrip(":").strip())
        if text.endswith(":"):
            self._async_block = response
        else:
            self._notify(response)

    def _feed_async_block(self, line: str) -> None:
        block = self._async_block
        if not line:
            self._async_block = None
            self._notify(block)
            return
        parsed = parse_field(line)
        if parsed is None:
            self._anomaly(line, f"malformed field in asynchronous '{block}' block")
            return
        block.fields[parsed[0]] = parsed[1]

    def _notify(self, response: DeviceResponse) -> None:
        logger.debug("Asynchronous response %s %s", response, response.fields)
        if self._on_notification is not None:
            self._on_notification(response)

    def _anomaly(self, line: str, reason: str, quiet: bool = False) -> None:
        self.anomaly_count += 1
        anomaly = ProtocolParseAnomaly(line, reason)
        if quiet:
            logger.debug("Skipping line: %s", anomaly)
        else:
            logger.warning("Skipping line: %s", anomaly)


# ----------------------------------------------------------------------
# Response interpretation


def parse_slot_status(response: DeviceResponse, slot: int) -> SlotStatus:
    """Build a SlotStatus from a ``202 slot info:`` response."""
    fields = response.fields
    slot_id = fields.get("slot id")
    try:
        reported_slot = int(slot_id) if slot_id else slot
    except ValueError:
        reported_slot = slot
    return SlotStatus(
        slot=reported_slot,
        status=SlotState.parse(fields.get("status")),
        recording_time=fields.get("recording time") or None,
    )


def parse_transport_status(response: DeviceResponse) -> TransportStatus:
    """Build a TransportStatus from a ``208 transport info:`` response."""
    fields = response.fields

    def _int(key: str) -> Optional[int]:
        value = fields.get(key)
        if value is None or not value.strip().lstrip("-").isdigit():
            return None
        return int(value)

    return TransportStatus(
        status=fields.get("status", "unknown"),
        slot=_int("slot id"),
        clip_id=_int("clip id"),
        timecode=fields.get("timecode") or fields.get("display timecode"),
    )


__all__ = [
    "AwaitingFields",
    "AwaitingFramedBlock",
    "AwaitingSingleLine",
    "Commands",
    "DeviceResponse",
    "Idle",
    "LINE_TERMINATOR",
    "LineBuffer",
    "ResponseFramer",
    "ResponseShape",
    "parse_clip_line",
    "parse_slot_status",
    "parse_transport_status",
]
