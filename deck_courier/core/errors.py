"""Error taxonomy for the device client, monitoring and transfer layers."""

from __future__ import annotations

from typing import Optional


class DeckCourierError(Exception):
    """Base class for every error raised by Deck Courier."""


class DeviceConnectionError(DeckCourierError, ConnectionError):
    """The device is unreachable, refused the connection, or went away."""


class ProtocolError(DeckCourierError):
    """The device conversation did not go as expected."""


class ProtocolTimeout(ProtocolError, TimeoutError):
    """A framed block was not completed within its deadline."""


class CommandFailed(ProtocolError):
    """The device answered a command with an error status."""

    def __init__(self, command: str, code: int, text: str):
        super().__init__(f"'{command}' failed: {code} {text}")
        self.command = command
        self.code = code
        self.text = text


class ProtocolParseAnomaly(ProtocolError):
    """An unexpected line; reported in logs and skipped, never fatal."""

    def __init__(self, line: str, reason: str):
        super().__init__(f"{reason}: {line!r}")
        self.line = line
        self.reason = reason


class TransferError(DeckCourierError):
    """Retrieval or local placement of a single file failed."""

    def __init__(self, filename: str, message: str):
        super().__init__(f"Transfer of {filename} failed: {message}")
        self.filename = filename


class PreconditionError(DeckCourierError):
    """A call was made in a state or with arguments that cannot be honoured."""


class CommandInProgress(PreconditionError):
    """Another command's response has not completed yet."""

    def __init__(self, pending: Optional[str] = None):
        detail = f" ('{pending}' outstanding)" if pending else ""
        super().__init__(f"A device command is already in progress{detail}")
        self.pending = pending


class NotFound(DeckCourierError, FileNotFoundError):
    """A local file that an operation depends on no longer exists."""


__all__ = [
    "DeckCourierError",
    "DeviceConnectionError",
    "ProtocolError",
    "ProtocolTimeout",
    "CommandFailed",
    "ProtocolParseAnomaly",
    "TransferError",
    "PreconditionError",
    "CommandInProgress",
    "NotFound",
]
