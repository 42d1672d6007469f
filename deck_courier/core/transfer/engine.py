"""
Transfer Engine - clip retrieval over the recorder's anonymous FTP service.

Each operation opens its own FTP session; sessions are blocking ``ftplib``
objects driven from worker threads via ``asyncio.to_thread`` so several
transfers may run at once without stalling the event loop.

Downloads are written to ``<name>.part`` in the destination directory and
moved into place only after the last byte arrives, so a failed transfer never
leaves a truncated clip behind and a repeated transfer overwrites cleanly.
"""

from __future__ import annotations

import asyncio
import contextlib
import ftplib
import os
import time
from collections import deque
from pathlib import Path, PurePosixPath
from typing import Callable, Deque, Iterable, Iterator, List, Optional, Union

from deck_courier.core.errors import (
    DeckCourierError,
    DeviceConnectionError,
    NotFound,
    PreconditionError,
    TransferError,
)
from deck_courier.core.events import (
    ErrorEvent,
    EventChannel,
    FileRenamed,
    TransferComplete,
    TransferProgress,
)
from deck_courier.core.logging_utils import get_module_logger
from deck_courier.core.models import RemoteClip, TransferJob, TransferStatus, drive_for_slot
from deck_courier.core.settings import DeckSettings

logger = get_module_logger("TransferEngine")

PARTIAL_SUFFIX = ".part"
RETR_BLOCKSIZE = 64 * 1024
PROGRESS_INTERVAL = 0.5
RECENT_JOBS = 20

FTPFactory = Callable[[], ftplib.FTP]
PathLike = Union[str, os.PathLike]


def _is_visible_clip(name: str, extension: str) -> bool:
    return bool(name) and not name.startswith(".") and name.lower().endswith(extension)


def parse_list_line(line: str) -> Optional[tuple]:
    """Parse one Unix-style ``LIST`` line into ``(name, size)`` for plain files."""
    parts = line.split(None, 8)
    if len(parts) < 9 or not parts[0].startswith("-"):
        return None
    try:
        size = int(parts[4])
    except ValueError:
        size = None
    return parts[8], size


class _ProgressReporter:
    """Throttles TransferProgress events published from the worker thread."""

    def __init__(
        self,
        engine: "TransferEngine",
        loop: asyncio.AbstractEventLoop,
        filename: str,
        total: Optional[int],
        session: Optional[str],
    ):
        self._engine = engine
        self._loop = loop
        self._filename = filename
        self._total = total
        self._session = session
        self._received = 0
        self._last_report = 0.0

    @property
    def received(self) -> int:
        return self._received

    def advance(self, count: int) -> None:
        self._received += count
        now = time.monotonic()
        if now - self._last_report >= PROGRESS_INTERVAL:
            self._last_report = now
            self._publish()

    def finish(self) -> None:
        self._publish()

    def _publish(self) -> None:
        self._engine.events.publish_threadsafe(
            self._loop,
            TransferProgress(
                filename=self._filename,
                bytes_transferred=self._received,
                total_bytes=self._total,
                session=self._session,
            ),
        )


class TransferEngine:
    """Lists, retrieves and renames clips."""

    def __init__(
        self,
        host: Optional[str] = None,
        events: Optional[EventChannel] = None,
        settings: Optional[DeckSettings] = None,
        ftp_factory: Optional[FTPFactory] = None,
    ):
        self.host = host
        self.settings = settings or DeckSettings()
        self.events = events if events is not None else EventChannel()
        self._ftp_factory: FTPFactory = ftp_factory or ftplib.FTP
        self._jobs: Deque[TransferJob] = deque(maxlen=RECENT_JOBS)

    @property
    def extension(self) -> str:
        return self.settings.clip_extension

    @property
    def recent_jobs(self) -> List[TransferJob]:
        return list(self._jobs)

    # ------------------------------------------------------------------
    # FTP sessions

    def _require_host(self) -> str:
        if not self.host:
            raise DeviceConnectionError("No device address set for file retrieval")
        return self.host

    def _connect(self) -> ftplib.FTP:
        host = self._require_host()
        port = self.settings.ftp_port
        ftp = self._ftp_factory()
        try:
            ftp.connect(host, port, timeout=self.settings.ftp_timeout)
            ftp.login(self.settings.ftp_user, self.settings.ftp_password)
        except ftplib.all_errors as exc:
            with contextlib.suppress(Exception):
                ftp.close()
            raise DeviceConnectionError(f"FTP login to {host}:{port} failed: {exc}") from exc
        logger.debug("FTP session opened to %s:%s", host, port)
        return ftp

    @contextlib.contextmanager
    def _session(self) -> Iterator[ftplib.FTP]:
        ftp = self._connect()
        try:
            yield ftp
        finally:
            try:
                ftp.quit()
            except ftplib.all_errors:
                ftp.close()

    # ------------------------------------------------------------------
    # Listing

    async def list_clips(self, slots: Iterable[int]) -> List[RemoteClip]:
        """List clips on the selected slots, newest name first."""
        return await asyncio.to_thread(self._list_clips_blocking, sorted(set(slots)))

    def _list_clips_blocking(self, slots: List[int]) -> List[RemoteClip]:
        drives = [drive_for_slot(slot) for slot in slots]
        clips: List[RemoteClip] = []
        try:
            with self._session() as ftp:
                for slot in slots:
                    clips.extend(self._list_slot(ftp, slot))
        except DeckCourierError:
            raise
        except ftplib.all_errors as exc:
            detail = str(exc) or type(exc).__name__
            raise DeviceConnectionError(f"Listing {', '.join(drives)} failed: {detail}") from exc

        clips.sort(key=lambda clip: clip.name, reverse=True)
        logger.debug("Found %d clips on %s", len(clips), drives)
        return clips

    def _list_slot(self, ftp: ftplib.FTP, slot: int) -> List[RemoteClip]:
        # A missing drive is empty; any other failure aborts the whole listing
        drive = drive_for_slot(slot)
        try:
            ftp.cwd(drive)
        except ftplib.error_perm as exc:
            logger.info("No files in %s or directory not accessible (%s)", drive, exc)
            return []
        try:
            entries = self._list_directory(ftp)
        finally:
            ftp.cwd("..")
        return [
            RemoteClip(name=name, slot=slot, size=size)
            for name, size in entries
            if _is_visible_clip(name, self.extension)
        ]

    @staticmethod
    def _list_directory(ftp: ftplib.FTP) -> List[tuple]:
        try:
            return [
                (name, int(facts["size"]) if facts.get("size", "").isdigit() else None)
                for name, facts in ftp.mlsd(facts=["type", "size"])
                if facts.get("type", "file") == "file"
            ]
        except ftplib.error_perm:
            logger.debug("MLSD not supported, falling back to LIST")

        lines: List[str] = []
        ftp.retrlines("LIST", lines.append)
        return [entry for entry in (parse_list_line(line) for line in lines) if entry is not None]

    # ------------------------------------------------------------------
    # Retrieval

    async def transfer(
        self,
        clip: RemoteClip,
        destination_path: PathLike,
        session: Optional[str] = None,
    ) -> Path:
        """Retrieve ``clip`` into ``destination_path``; raises TransferError."""
        destination = Path(destination_path)
        if not destination.is_dir():
            raise PreconditionError(f"Destination path does not exist: {destination}")

        job = TransferJob(clip=clip, destination_path=destination)
        self._jobs.append(job)
        loop = asyncio.get_running_loop()
        logger.info("Transferring %s to %s", clip.path, destination)
        try:
            target = await asyncio.to_thread(self._retrieve, job, loop, session)
        except TransferError as exc:
            job.status = TransferStatus.FAILED
            job.error = str(exc)
            logger.error("%s", exc)
            self.events.publish(
                ErrorEvent(message=str(exc), source="transfer", filename=clip.name, session=session)
            )
            raise

        job.status = TransferStatus.COMPLETE
        logger.info("Transferred %s (%d bytes)", clip.name, job.bytes_transferred)
        self.events.publish(
            TransferComplete(filename=clip.name, destination_path=str(target), session=session)
        )
        return target

    def _retrieve(
        self,
        job: TransferJob,
        loop: asyncio.AbstractEventLoop,
        session: Optional[str],
    ) -> Path:
        clip = job.clip
        destination = job.destination_path
        name = PurePosixPath(clip.name).name
        target = destination / name
        partial = destination / f"{name}{PARTIAL_SUFFIX}"

        try:
            with self._session() as ftp:
                ftp.cwd(clip.drive)
                progress = _ProgressReporter(self, loop, name, clip.size, session)
                with open(partial, "wb") as handle:

                    def _write(chunk: bytes) -> None:
                        handle.write(chunk)
                        progress.advance(len(chunk))

                    ftp.retrbinary(f"RETR {name}", _write, blocksize=RETR_BLOCKSIZE)
                job.bytes_transferred = progress.received
                progress.finish()
            os.replace(partial, target)
        except ftplib.all_errors + (DeckCourierError,) as exc:
            with contextlib.suppress(OSError):
                partial.unlink()
            raise TransferError(name, str(exc) or type(exc).__name__) from exc

        return target

    async def check_reachable(self) -> None:
        """Check the FTP port accepts connections; raises DeviceConnectionError otherwise."""
        host = self._require_host()
        port = self.settings.ftp_port
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=self.settings.ftp_timeout
            )
        except (OSError, asyncio.TimeoutError) as exc:
            raise DeviceConnectionError(f"File service at {host}:{port} unreachable: {exc}") from exc
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
        logger.debug("File service at %s:%s reachable", host, port)

    # ------------------------------------------------------------------
    # Local files

    async def rename(self, old_path: PathLike, new_name: str, session: Optional[str] = None) -> Path:
        """Rename a delivered clip in place, keeping its extension."""
        source = Path(old_path)
        name = (new_name or "").strip()
        if not name:
            raise PreconditionError("New name must not be empty")
        if "/" in name or "\\" in name or name in (".", ".."):
            raise PreconditionError(f"Invalid file name: {name}")
        if not source.exists():
            raise NotFound(f"File does not exist: {source}")

        if not PurePosixPath(name).suffix:
            name = f"{name}{source.suffix}"
        target = source.with_name(name)
        if target.exists():
            raise PreconditionError(f"A file named {name} already exists")

        await asyncio.to_thread(source.rename, target)
        logger.info("Renamed %s to %s", source.name, target.name)
        self.events.publish(
            FileRenamed(old_name=source.name, new_name=target.name, path=str(target), session=session)
        )
        return target


__all__ = ["TransferEngine", "parse_list_line"]
