import json
from datetime import datetime, timezone

import pytest

from syncwatch.monitor.events import (
    AlreadyRunning,
    CriticalError,
    DriveNotMounted,
    FileChange,
    StatsUpdate,
    SyncCompleted,
    SyncFailed,
    SyncStarted,
    Unrecognized,
)
from syncwatch.monitor.log_parser import parse_line, parse_operation, parse_timestamp
from syncwatch.shared.schemas import FileOperation


def json_line(**fields) -> str:
    fields.setdefault("time", "2026-02-14T10:30:00.123456789+01:00")
    fields.setdefault("level", "info")
    return json.dumps(fields)


# (line, expected event type)
marker_cases = [
    ("2026-02-14 10:30:00 - Starting bisync", SyncStarted),
    ("2026-02-14 10:31:00 - Bisync completed successfully", SyncCompleted),
    ("2026-02-14 10:31:00 - Bisync failed with exit code 2", SyncFailed),
    ("2026-02-14 10:31:00 - Drive not mounted, skipping sync", DriveNotMounted),
    ("2026-02-14 10:31:00 - Sync already running (PID 4242), skipping", AlreadyRunning),
    ("2026/02/16 06:42:11 CRITICAL: Bisync aborted. Must run --resync to recover.", CriticalError),
    ("2026/02/16 06:42:11 NOTICE: Bisync successful", SyncCompleted),
    (json_line(level="notice", msg="Bisync successful"), SyncCompleted),
    (json_line(level="error", msg="Failed to copy: permission denied"), CriticalError),
    ("Transferred:   0 B / 0 B, -, 0 B/s, ETA -", Unrecognized),
    ("", Unrecognized),
    ("{not json at all}", Unrecognized),
]


@pytest.mark.parametrize("line,expected", marker_cases)
def test_parse_line_event_type(line, expected):
    event = parse_line(line)
    assert isinstance(event, expected), f"{line!r} parsed as {type(event).__name__}, expected {expected.__name__}"


def test_failure_marker_carries_exit_code():
    event = parse_line("2026-02-14 10:31:00 - Bisync failed with exit code 2")
    assert isinstance(event, SyncFailed)
    assert event.exit_code == 2
    assert "exit code 2" in event.message


def test_script_timestamp_is_used():
    event = parse_line("2026-02-14 10:30:00 - Starting bisync")
    local = event.timestamp.astimezone().replace(tzinfo=None)
    assert local == datetime(2026, 2, 14, 10, 30, 0)


def test_json_copy_produces_file_change():
    event = parse_line(json_line(msg="Copied (new)", object="docs/report.pdf", objectType="*local.Object"))
    assert isinstance(event, FileChange)
    assert event.change.path == "docs/report.pdf"
    assert event.change.operation == FileOperation.CREATED
    assert event.change.file_name == "report.pdf"
    assert event.change.directory == "docs"


def test_json_stats_produce_progress():
    stats = {
        "bytes": 1_500_000,
        "totalBytes": 3_000_000,
        "transfers": 1,
        "totalTransfers": 4,
        "speed": 512_000.0,
        "eta": 3,
        "elapsedTime": 2.5,
        "transferring": [{"name": "big.iso"}],
    }
    event = parse_line(json_line(msg="\nTransferred: 1.5 MB / 3 MB, 50%", stats=stats))
    assert isinstance(event, StatsUpdate)
    progress = event.progress
    assert progress.bytes_transferred == 1_500_000
    assert progress.total_bytes == 3_000_000
    assert progress.fraction == pytest.approx(0.5)
    assert progress.eta_seconds == 3
    assert progress.transferring == ["big.iso"]
    assert progress.describe() == "1.5 MB / 3.0 MB (50%) at 512.0 KB/s, ETA 3s"


def test_critical_message_is_cleaned():
    line = "2026/02/16 06:42:11 CRITICAL: \x1b[31mBisync critical error: out of sync\x1b[0m"
    event = parse_line(line)
    assert isinstance(event, CriticalError)
    assert event.message == "out of sync"


def test_structured_error_is_truncated():
    event = parse_line(json_line(level="error", msg="x" * 500))
    assert isinstance(event, CriticalError)
    assert len(event.message) <= 203


@pytest.mark.parametrize("level", ["error", "ERROR", "critical"])
def test_failed_transfer_is_an_error_not_a_change(level):
    line = json_line(level=level, msg="Failed to copy: permission denied", object="docs/b.txt", objectType="*local.Object")

    event = parse_line(line)

    assert isinstance(event, CriticalError), f"{level} record parsed as {type(event).__name__}"
    assert event.message == "docs/b.txt: Failed to copy: permission denied"


def test_free_text_listing_never_yields_file_change():
    event = parse_line("2026/02/14 10:30:05 INFO  : docs/report.pdf: Copied (new)")
    assert not isinstance(event, FileChange)


def test_parse_line_never_raises_on_garbage():
    for line in ["\x00\x01", "{" * 50, '{"level": 5, "stats": "nope"}', "\\u001b[31m", "CRITICAL:"]:
        parse_line(line)


timestamp_cases = [
    ("2026-02-14T10:30:00.123456789+01:00", datetime(2026, 2, 14, 9, 30, 0, 123456, tzinfo=timezone.utc)),
    ("2026-02-14T10:30:00Z", datetime(2026, 2, 14, 10, 30, 0, tzinfo=timezone.utc)),
    ("2026-02-14T10:30:00.5+00:00", datetime(2026, 2, 14, 10, 30, 0, 500000, tzinfo=timezone.utc)),
]


@pytest.mark.parametrize("value,expected", timestamp_cases)
def test_parse_timestamp(value, expected):
    assert parse_timestamp(value) == expected


def test_parse_timestamp_rejects_garbage():
    assert parse_timestamp("") is None
    assert parse_timestamp("yesterday") is None


@pytest.mark.parametrize(
    "message,expected",
    [
        ("Copied (new)", FileOperation.CREATED),
        ("Copied (replaced existing)", FileOperation.UPDATED),
        ("Deleted", FileOperation.DELETED),
        ("Renamed from old.txt", FileOperation.RENAMED),
        ("Updated modification time in destination", FileOperation.UPDATED),
        ("Checking for changes", None),
    ],
)
def test_parse_operation(message, expected):
    assert parse_operation(message) == expected
