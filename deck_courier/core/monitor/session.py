"""
Monitor Session - baseline capture, arrival detection and the final check.

A session lists the selected drives once at ``start`` to capture its baseline
(clip names tagged with slot). While active it re-lists every
``watch_interval`` seconds; names absent from the baseline are announced once
with ``FileDetected`` and the newest of them, by reverse name order, is
transferred once its size has held across two listings.

``stop`` always performs one more listing so a clip that finished recording
just before the operator pressed stop is not missed.
"""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from functools import partial
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, TYPE_CHECKING

from deck_courier.core.errors import DeckCourierError, PreconditionError, TransferError
from deck_courier.core.events import (
    ErrorEvent,
    EventChannel,
    FileDetected,
    MonitoringStarted,
    MonitoringStopped,
)
from deck_courier.core.logging_utils import get_module_logger
from deck_courier.core.models import RemoteClip, StopReport, drive_for_slot, normalize_drives
from deck_courier.core.settings import DeckSettings
from deck_courier.core.transfer.engine import PathLike, TransferEngine

if TYPE_CHECKING:
    from deck_courier.core.device.client import ProtocolClient

logger = get_module_logger("MonitorSession")

ClipKey = Tuple[int, str]


def clip_key(clip: RemoteClip) -> ClipKey:
    return clip.slot, clip.name


def newest(clips: Iterable[RemoteClip]) -> Optional[RemoteClip]:
    """Pick the most recent clip: greatest name, then greatest slot."""
    return max(clips, key=lambda clip: (clip.name, clip.slot), default=None)


class MonitorSession:
    """One operator's watch over a set of drives."""

    def __init__(
        self,
        engine: TransferEngine,
        client: Optional["ProtocolClient"] = None,
        events: Optional[EventChannel] = None,
        settings: Optional[DeckSettings] = None,
        session_id: Optional[str] = None,
    ):
        self.engine = engine
        self.client = client
        self.events = events if events is not None else engine.events
        self.settings = settings or engine.settings
        self.session_id = session_id or uuid.uuid4().hex[:8]

        self._active = False
        self._slots: frozenset = frozenset()
        self._destination: Optional[Path] = None
        self._baseline: frozenset = frozenset()

        self._detected: Set[ClipKey] = set()
        self._previous_sizes: Dict[ClipKey, Optional[int]] = {}
        self._delivered: Dict[ClipKey, Tuple[Optional[int], Path]] = {}

        self._watch_task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Future] = None
        self._lifecycle_lock = asyncio.Lock()
        self._transfer_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Properties

    @property
    def active(self) -> bool:
        return self._active

    @property
    def slots(self) -> frozenset:
        return self._slots

    @property
    def drives(self) -> Tuple[str, ...]:
        return tuple(drive_for_slot(slot) for slot in sorted(self._slots))

    @property
    def destination(self) -> Optional[Path]:
        return self._destination

    @property
    def baseline(self) -> frozenset:
        return self._baseline

    @property
    def delivered(self) -> Dict[ClipKey, Path]:
        return {key: path for key, (_, path) in self._delivered.items()}

    def status(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "active": self._active,
            "drives": list(self.drives),
            "destinationPath": str(self._destination) if self._destination else None,
            "baselineCount": len(self._baseline),
            "detected": sorted(f"{drive_for_slot(slot)}/{name}" for slot, name in self._detected),
            "delivered": sorted(path.name for _, path in self._delivered.values()),
        }

    # ------------------------------------------------------------------
    # Lifecycle

    async def start(self, drives: Any, destination_path: PathLike) -> None:
        """Capture the baseline and begin watching. No-op while active."""
        async with self._lifecycle_lock:
            if self._active:
                logger.debug("Session %s already active", self.session_id)
                return

            try:
                slots = normalize_drives(drives)
            except ValueError as exc:
                raise PreconditionError(str(exc)) from exc
            if not slots:
                raise PreconditionError("No drive selected")

            destination = Path(destination_path).expanduser() if destination_path else None
            if destination is None or not destination.is_dir():
                raise PreconditionError(f"Destination path does not exist: {destination_path}")

            listing = await self.engine.list_clips(slots)

            self._slots = slots
            self._destination = destination
            self._baseline = frozenset(clip_key(clip) for clip in listing)
            self._detected = set()
            self._previous_sizes = {}
            self._delivered = {}
            self._active = True

            if self.client is not None and self.client.is_connected:
                self.client.start_polling(slots, owner=self.session_id)

            interval = self.settings.watch_interval
            if interval:
                self._watch_task = asyncio.create_task(
                    self._watch_loop(interval), name=f"monitor-{self.session_id}"
                )

        logger.info(
            "Session %s monitoring %s into %s (%d clips in baseline)",
            self.session_id, ", ".join(self.drives), destination, len(self._baseline),
        )
        self.events.publish(
            MonitoringStarted(
                session=self.session_id,
                drives=self.drives,
                destination_path=str(destination),
                baseline_count=len(self._baseline),
            )
        )

    async def final_check(self) -> StopReport:
        """Run the stop-time check without ending the session."""
        async with self._lifecycle_lock:
            if not self._active:
                raise PreconditionError("Monitoring is not active")
            return await self._final_pass()

    async def stop(self) -> StopReport:
        """Final check, then tear down. Returns an empty report if already stopped."""
        async with self._lifecycle_lock:
            if not self._active:
                return StopReport()
            self._active = False
            logger.info("Session %s stopping, running final transfer check", self.session_id)

            await self._cancel_watch()
            if self._inflight is not None and not self._inflight.done():
                logger.info("Waiting for in-flight transfer to finish")
                await asyncio.wait([self._inflight])

            report = StopReport()
            try:
                report = await self._final_pass()
            except DeckCourierError as exc:
                message = f"Final transfer failed: {exc}"
                logger.error(message)
                self.events.publish(ErrorEvent(message=message, source="monitor", session=self.session_id))
                raise
            finally:
                if self.client is not None:
                    await self.client.stop_polling(self.session_id)
                self.events.publish(
                    MonitoringStopped(
                        session=self.session_id,
                        last_transferred_name=report.file_name,
                        last_transferred_path=str(report.file_path) if report.file_path else None,
                    )
                )

        logger.info("Session %s stopped (last transferred: %s)", self.session_id, report.file_name)
        return report

    async def _cancel_watch(self) -> None:
        task = self._watch_task
        self._watch_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # ------------------------------------------------------------------
    # Detection

    async def _watch_loop(self, interval: float) -> None:
        while self._active:
            await asyncio.sleep(interval)
            try:
                await self.check_once()
            except DeckCourierError as exc:
                message = f"Listing failed: {exc}"
                logger.warning("Session %s: %s", self.session_id, message)
                self.events.publish(ErrorEvent(message=message, source="monitor", session=self.session_id))
            except Exception as exc:
                message = f"Listing failed: {str(exc) or type(exc).__name__}"
                logger.exception("Session %s: unexpected watch failure", self.session_id)
                self.events.publish(ErrorEvent(message=message, source="monitor", session=self.session_id))

    async def check_once(self) -> Optional[Path]:
        """One periodic re-listing; transfers the newest settled new clip."""
        listing = await self.engine.list_clips(self._slots)
        new_clips = self._detect(listing)

        candidate = newest(new_clips)
        settled = candidate is not None and self._is_settled(candidate)
        self._previous_sizes = {clip_key(clip): clip.size for clip in new_clips}

        if candidate is None or not settled:
            return None
        return await self._deliver(candidate)

    def _detect(self, listing: List[RemoteClip]) -> List[RemoteClip]:
        new_clips = [clip for clip in listing if clip_key(clip) not in self._baseline]
        for clip in new_clips:
            key = clip_key(clip)
            if key in self._detected:
                continue
            self._detected.add(key)
            logger.info("New file detected: %s", clip.path)
            self.events.publish(FileDetected(file_path=clip.path, session=self.session_id))
        return new_clips

    def _is_settled(self, clip: RemoteClip) -> bool:
        key = clip_key(clip)
        return key in self._previous_sizes and self._previous_sizes[key] == clip.size

    # ------------------------------------------------------------------
    # Delivery

    def _delivered_path(self, clip: RemoteClip) -> Optional[Path]:
        entry = self._delivered.get(clip_key(clip))
        if entry is None:
            return None
        size, path = entry
        if size != clip.size or not path.exists():
            return None
        return path

    async def _deliver(self, clip: RemoteClip) -> Optional[Path]:
        async with self._transfer_lock:
            existing = self._delivered_path(clip)
            if existing is not None:
                logger.debug("%s already delivered to %s", clip.name, existing)
                return existing

            task = asyncio.ensure_future(
                self.engine.transfer(clip, self._destination, session=self.session_id)
            )
            task.add_done_callback(partial(self._record_delivery, clip))
            self._inflight = task
            try:
                # Shielded: cancelling the watch loop must not abort a copy
                return await asyncio.shield(task)
            except TransferError:
                return None

    def _record_delivery(self, clip: RemoteClip, task: asyncio.Future) -> None:
        if task.cancelled() or task.exception() is not None:
            return
        self._delivered[clip_key(clip)] = (clip.size, task.result())

    async def _final_pass(self) -> StopReport:
        await self.engine.check_reachable()
        listing = await self.engine.list_clips(self._slots)
        new_clips = self._detect(listing)

        candidate = newest(new_clips)
        if candidate is None:
            logger.info("No new files found to transfer")
            return StopReport()

        path = await self._deliver(candidate)
        if path is None:
            return StopReport()
        return StopReport(file_name=candidate.name, file_path=path)


__all__ = ["MonitorSession", "clip_key", "newest"]
