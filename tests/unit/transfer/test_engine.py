"""Unit tests for TransferEngine listing, retrieval and rename.

The FTP side is an in-memory fake injected through ``ftp_factory``; local
files are written under pytest's ``tmp_path``.
"""

from __future__ import annotations

import pytest

from deck_courier.core.errors import DeviceConnectionError, NotFound, PreconditionError, TransferError
from deck_courier.core.events import ErrorEvent, FileRenamed, TransferComplete, TransferProgress
from deck_courier.core.models import RemoteClip, TransferStatus
from deck_courier.core.transfer.engine import TransferEngine, parse_list_line
from tests.infrastructure.helpers import events_of, next_event


# =============================================================================
# Listing
# =============================================================================


class TestListClips:

    @pytest.mark.asyncio
    async def test_lists_both_slots_newest_name_first(self, engine):
        clips = await engine.list_clips([1, 2])

        assert [clip.path for clip in clips] == [
            "ssd2/B_0001.mp4",
            "ssd1/A_0003.mp4",
            "ssd1/A_0002.mp4",
            "ssd1/A_0001.mp4",
        ]
        assert clips[0].size == 1024

    @pytest.mark.asyncio
    async def test_filters_hidden_and_foreign_files(self, engine, ftp_server):
        ftp_server.add("ssd1", ".A_0009.mp4")
        ftp_server.add("ssd1", "notes.txt")
        ftp_server.add("ssd1", "A_0004.MP4")

        names = {clip.name for clip in await engine.list_clips([1])}

        assert names == {"A_0001.mp4", "A_0002.mp4", "A_0003.mp4", "A_0004.MP4"}

    @pytest.mark.asyncio
    async def test_missing_drive_is_skipped(self, engine):
        clips = await engine.list_clips([1, 2, 3])

        assert {clip.slot for clip in clips} == {1, 2}

    @pytest.mark.asyncio
    async def test_list_fallback_when_mlsd_unsupported(self, engine, ftp_server):
        ftp_server.mlsd_supported = False

        clips = await engine.list_clips([1])

        assert [clip.name for clip in clips] == ["A_0003.mp4", "A_0002.mp4", "A_0001.mp4"]
        assert all(clip.size == 1024 for clip in clips)

    @pytest.mark.asyncio
    async def test_each_listing_uses_its_own_session(self, engine, ftp_server):
        await engine.list_clips([1])
        await engine.list_clips([2])

        assert ftp_server.sessions_opened == 2
        assert ftp_server.open_sessions == 0
        assert ftp_server.logins == [("anonymous", "anonymous")] * 2

    @pytest.mark.asyncio
    async def test_unreachable_service(self, engine, ftp_server):
        ftp_server.unreachable = True

        with pytest.raises(DeviceConnectionError):
            await engine.list_clips([1])

    @pytest.mark.asyncio
    async def test_connection_drop_mid_listing(self, engine, ftp_server):
        ftp_server.drop_listing = True

        with pytest.raises(DeviceConnectionError) as exc_info:
            await engine.list_clips([1, 2])

        assert "ssd1" in str(exc_info.value)
        assert ftp_server.open_sessions == 0

    @pytest.mark.asyncio
    async def test_listing_recovers_after_drop(self, engine, ftp_server):
        ftp_server.drop_listing = True
        with pytest.raises(DeviceConnectionError):
            await engine.list_clips([1])

        ftp_server.drop_listing = False
        clips = await engine.list_clips([1])

        assert len(clips) == 3

    @pytest.mark.asyncio
    async def test_no_host(self, settings, ftp_server):
        engine = TransferEngine(settings=settings, ftp_factory=ftp_server.factory)

        with pytest.raises(DeviceConnectionError):
            await engine.list_clips([1])


class TestParseListLine:

    def test_plain_file(self):
        assert parse_list_line("-rw-r--r-- 1 owner group 2048 Jan 01 00:00 A_0001.mp4") == ("A_0001.mp4", 2048)

    def test_name_with_spaces(self):
        entry = parse_list_line("-rw-r--r-- 1 owner group 10 Jan 01 00:00 Take 2.mp4")
        assert entry == ("Take 2.mp4", 10)

    def test_directories_and_short_lines_skipped(self):
        assert parse_list_line("drwxr-xr-x 1 owner group 0 Jan 01 00:00 ssd1") is None
        assert parse_list_line("total 3") is None


# =============================================================================
# Retrieval
# =============================================================================


class TestTransfer:

    @pytest.mark.asyncio
    async def test_transfer_writes_file_and_publishes(self, engine, ftp_server, events, destination):
        subscription = events.subscribe()
        clip = RemoteClip(name="A_0003.mp4", slot=1, size=1024)

        target = await engine.transfer(clip, destination, session="s1")

        assert target == destination / "A_0003.mp4"
        assert target.read_bytes() == ftp_server.drives["ssd1"]["A_0003.mp4"]
        assert ftp_server.retrieved == ["ssd1/A_0003.mp4"]
        job = engine.recent_jobs[-1]
        assert job.status is TransferStatus.COMPLETE
        assert job.bytes_transferred == 1024

        progress = await next_event(subscription, TransferProgress)
        assert progress.session == "s1"
        complete = await next_event(subscription, TransferComplete)
        assert complete.filename == "A_0003.mp4"
        assert complete.destination_path == str(target)

    @pytest.mark.asyncio
    async def test_fresh_session_per_transfer(self, engine, ftp_server, destination):
        await engine.transfer(RemoteClip(name="A_0001.mp4", slot=1), destination)
        await engine.transfer(RemoteClip(name="B_0001.mp4", slot=2), destination)

        assert ftp_server.sessions_opened == 2
        assert ftp_server.open_sessions == 0
        assert (destination / "B_0001.mp4").exists()

    @pytest.mark.asyncio
    async def test_failure_leaves_no_partial_file(self, engine, ftp_server, events, destination):
        subscription = events.subscribe()
        ftp_server.fail_retrieval.add("A_0002.mp4")

        with pytest.raises(TransferError) as exc_info:
            await engine.transfer(RemoteClip(name="A_0002.mp4", slot=1), destination, session="s1")

        assert exc_info.value.filename == "A_0002.mp4"
        assert engine.recent_jobs[-1].status is TransferStatus.FAILED
        assert list(destination.iterdir()) == []
        errors = events_of(subscription, ErrorEvent)
        assert len(errors) == 1
        assert errors[0].source == "transfer"
        assert errors[0].filename == "A_0002.mp4"
        assert ftp_server.open_sessions == 0

    @pytest.mark.asyncio
    async def test_later_transfer_succeeds_after_failure(self, engine, ftp_server, destination):
        ftp_server.fail_retrieval.add("A_0002.mp4")
        with pytest.raises(TransferError):
            await engine.transfer(RemoteClip(name="A_0002.mp4", slot=1), destination)

        target = await engine.transfer(RemoteClip(name="A_0003.mp4", slot=1), destination)

        assert target.exists()

    @pytest.mark.asyncio
    async def test_missing_remote_file(self, engine, destination):
        with pytest.raises(TransferError):
            await engine.transfer(RemoteClip(name="A_0099.mp4", slot=1), destination)

        assert list(destination.iterdir()) == []

    @pytest.mark.asyncio
    async def test_overwrites_existing_file(self, engine, ftp_server, destination):
        (destination / "A_0001.mp4").write_bytes(b"stale")

        target = await engine.transfer(RemoteClip(name="A_0001.mp4", slot=1), destination)

        assert target.read_bytes() == ftp_server.drives["ssd1"]["A_0001.mp4"]

    @pytest.mark.asyncio
    async def test_missing_destination(self, engine, tmp_path):
        with pytest.raises(PreconditionError):
            await engine.transfer(RemoteClip(name="A_0001.mp4", slot=1), tmp_path / "nowhere")

    @pytest.mark.asyncio
    async def test_unreachable_service_is_transfer_error(self, engine, ftp_server, destination):
        ftp_server.unreachable = True

        with pytest.raises(TransferError):
            await engine.transfer(RemoteClip(name="A_0001.mp4", slot=1), destination)


class TestCheckReachable:

    @pytest.mark.asyncio
    async def test_open_port(self, engine):
        await engine.check_reachable()

    @pytest.mark.asyncio
    async def test_closed_port(self, engine, ftp_listener):
        ftp_listener.close()
        await ftp_listener.wait_closed()

        with pytest.raises(DeviceConnectionError):
            await engine.check_reachable()


# =============================================================================
# Rename
# =============================================================================


class TestRename:

    @pytest.mark.asyncio
    async def test_keeps_extension(self, engine, events, destination):
        subscription = events.subscribe()
        source = destination / "A_0003.mp4"
        source.write_bytes(b"clip")

        target = await engine.rename(source, "Interview")

        assert target == destination / "Interview.mp4"
        assert target.read_bytes() == b"clip"
        assert not source.exists()
        event = await next_event(subscription, FileRenamed)
        assert event.old_name == "A_0003.mp4"
        assert event.new_name == "Interview.mp4"

    @pytest.mark.asyncio
    async def test_explicit_extension_kept(self, engine, destination):
        source = destination / "A_0003.mp4"
        source.write_bytes(b"clip")

        target = await engine.rename(source, "Interview.mov")

        assert target.name == "Interview.mov"

    @pytest.mark.asyncio
    async def test_missing_source(self, engine, destination):
        with pytest.raises(NotFound):
            await engine.rename(destination / "gone.mp4", "Interview")

    @pytest.mark.asyncio
    async def test_existing_target_refused(self, engine, destination):
        (destination / "A_0003.mp4").write_bytes(b"new")
        (destination / "Interview.mp4").write_bytes(b"old")

        with pytest.raises(PreconditionError):
            await engine.rename(destination / "A_0003.mp4", "Interview")

        assert (destination / "Interview.mp4").read_bytes() == b"old"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["", "   ", "../escape", "sub\\dir", ".."])
    async def test_invalid_names(self, engine, destination, name):
        source = destination / "A_0003.mp4"
        source.write_bytes(b"clip")

        with pytest.raises(PreconditionError):
            await engine.rename(source, name)

        assert source.exists()
