"""Value types shared by the device client, monitor and transfer engine."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Union

# Drive directories on the recorder's file service are "ssd1", "ssd2", ...
_DRIVE_RE = re.compile(r"^ssd(\d+)$", re.IGNORECASE)


def drive_for_slot(slot: int) -> str:
    return f"ssd{slot}"


def slot_for_drive(drive: Union[str, int]) -> int:
    """Map ``"ssd2"``, ``"2"`` or ``2`` to slot number 2."""
    if isinstance(drive, int):
        slot = drive
    else:
        text = str(drive).strip()
        match = _DRIVE_RE.match(text)
        if match:
            slot = int(match.group(1))
        elif text.isdigit():
            slot = int(text)
        else:
            raise ValueError(f"Unrecognised drive '{drive}'")
    if slot < 1:
        raise ValueError(f"Slot numbers start at 1, got {slot}")
    return slot


def normalize_drives(drives: Union[Mapping[str, Any], Iterable[Union[str, int]], None]) -> frozenset:
    """Return the selected slot numbers.

    Accepts the dashboard's ``{"ssd1": true, "ssd2": false}`` mapping as well
    as a plain iterable of drive names or slot numbers.
    """
    if not drives:
        return frozenset()
    if isinstance(drives, (str, int)):
        drives = [drives]
    if isinstance(drives, Mapping):
        selected = [name for name, enabled in drives.items() if enabled]
    else:
        selected = list(drives)
    return frozenset(slot_for_drive(item) for item in selected)


@dataclass(frozen=True)
class ClipRecord:
    """One entry of the device's clip catalog."""
    id: int
    name: str
    start_timecode: str
    duration: str
    slot: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "startTime": self.start_timecode,
            "duration": self.duration,
            "slot": self.slot,
        }


class SlotState(Enum):
    EMPTY = "empty"
    MOUNTED = "mounted"
    ERROR = "error"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "SlotState":
        if not value:
            return cls.UNKNOWN
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class SlotStatus:
    slot: int
    status: SlotState
    recording_time: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slot": self.slot,
            "status": self.status.value,
            "recordingTime": self.recording_time,
        }


@dataclass(frozen=True)
class TransportStatus:
    status: str
    slot: Optional[int] = None
    clip_id: Optional[int] = None
    timecode: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "slot": self.slot,
            "clipId": self.clip_id,
            "timecode": self.timecode,
        }


@dataclass(frozen=True)
class RemoteClip:
    """A clip file as seen through the recorder's file-retrieval service."""
    name: str
    slot: int
    size: Optional[int] = None

    @property
    def drive(self) -> str:
        return drive_for_slot(self.slot)

    @property
    def path(self) -> str:
        return f"{self.drive}/{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "drive": self.drive,
            "size": self.size,
        }


class TransferStatus(Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class TransferJob:
    """One retrieval attempt and its outcome."""
    clip: RemoteClip
    destination_path: Path
    status: TransferStatus = TransferStatus.PENDING
    bytes_transferred: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file": self.clip.path,
            "destinationPath": str(self.destination_path),
            "status": self.status.value,
            "bytesTransferred": self.bytes_transferred,
            "error": self.error,
        }


@dataclass(frozen=True)
class StopReport:
    """What a monitoring session delivered in its final check."""
    file_name: Optional[str] = None
    file_path: Optional[Path] = None

    @property
    def transferred(self) -> bool:
        return self.file_name is not None

    def to_dict(self) -> Optional[Dict[str, Any]]:
        if self.file_name is None:
            return None
        return {"name": self.file_name, "path": str(self.file_path)}


@dataclass
class DeviceInfo:
    """Fields of the ``500 connection info:`` banner sent on connect."""
    fields: Dict[str, str] = field(default_factory=dict)

    @property
    def model(self) -> Optional[str]:
        return self.fields.get("model")

    @property
    def protocol_version(self) -> Optional[str]:
        return self.fields.get("protocol version")


__all__ = [
    "ClipRecord",
    "DeviceInfo",
    "RemoteClip",
    "SlotState",
    "SlotStatus",
    "StopReport",
    "TransferJob",
    "TransferStatus",
    "TransportStatus",
    "drive_for_slot",
    "normalize_drives",
    "slot_for_drive",
]
