"""Tests for drive mapping and value types."""

from __future__ import annotations

from pathlib import Path

import pytest

from deck_courier.core.models import (
    ClipRecord,
    RemoteClip,
    SlotState,
    StopReport,
    drive_for_slot,
    normalize_drives,
    slot_for_drive,
)


class TestDriveMapping:

    @pytest.mark.parametrize("drive, slot", [("ssd1", 1), ("SSD2", 2), ("2", 2), (3, 3)])
    def test_slot_for_drive(self, drive, slot):
        assert slot_for_drive(drive) == slot

    @pytest.mark.parametrize("drive", ["usb", "ssd", "0", 0])
    def test_rejects_unknown_drive(self, drive):
        with pytest.raises(ValueError):
            slot_for_drive(drive)

    def test_drive_for_slot(self):
        assert drive_for_slot(2) == "ssd2"

    def test_normalize_dashboard_mapping(self):
        assert normalize_drives({"ssd1": True, "ssd2": False}) == frozenset({1})

    def test_normalize_iterable(self):
        assert normalize_drives(["ssd1", 2]) == frozenset({1, 2})

    def test_normalize_single_value(self):
        assert normalize_drives("ssd2") == frozenset({2})

    @pytest.mark.parametrize("drives", [None, {}, []])
    def test_normalize_empty(self, drives):
        assert normalize_drives(drives) == frozenset()


class TestValueTypes:

    def test_remote_clip_path(self):
        clip = RemoteClip(name="A_0004.mp4", slot=2, size=10)

        assert clip.path == "ssd2/A_0004.mp4"
        assert clip.to_dict() == {"name": "A_0004.mp4", "path": "ssd2/A_0004.mp4", "drive": "ssd2", "size": 10}

    def test_clip_record_dict(self):
        record = ClipRecord(id=1, name="A_0001.mp4", start_timecode="00:00:00:00", duration="00:00:10:00")

        assert record.to_dict()["startTime"] == "00:00:00:00"

    def test_slot_state_parse(self):
        assert SlotState.parse("Mounted") is SlotState.MOUNTED
        assert SlotState.parse(None) is SlotState.UNKNOWN

    def test_stop_report(self):
        assert StopReport().to_dict() is None
        report = StopReport(file_name="A.mp4", file_path=Path("/dest/A.mp4"))
        assert report.transferred
        assert report.to_dict() == {"name": "A.mp4", "path": str(Path("/dest/A.mp4"))}
