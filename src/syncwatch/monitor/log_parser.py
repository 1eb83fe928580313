"""Parse rclone/sync-script log lines into typed events.

Two encodings share one log file:

* structured lines written by ``rclone --use-json-log`` (one JSON object per line)
* free-text markers written by the sync script, e.g.
  ``2026-02-14 10:30:00 - Starting bisync``, and plain rclone lines such as
  ``2026/02/16 06:42:11 CRITICAL: Bisync aborted. Must run --resync to recover.``

Only structured lines produce file changes: they carry the object path of
every transferred file. Bisync's free-text listing lines are not used for
that, so each change is reported once.
"""

import json
import logging
import re
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from syncwatch.monitor import log_patterns
from syncwatch.monitor.events import (
    AlreadyRunning,
    CriticalError,
    DriveNotMounted,
    FileChange,
    LogEvent,
    StatsUpdate,
    SyncCompleted,
    SyncFailed,
    SyncStarted,
    Unrecognized,
)
from syncwatch.shared.schemas import FileChangeRecord, FileOperation, Progress

logger = logging.getLogger(__name__)

# Structured messages are shorter in the UI than free-text critical errors
MAX_STRUCTURED_ERROR_LENGTH = 200

_SCRIPT_LINE_RE = re.compile(r"^(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}) - (.*)$")
_RCLONE_LINE_RE = re.compile(r"^(\d{4}/\d{2}/\d{2} \d{2}:\d{2}:\d{2}) (.*)$")
_FRACTION_RE = re.compile(r"^(.*T\d{2}:\d{2}:\d{2})\.(\d+)(.*)$")


class TransferringItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = ""


class RcloneStats(BaseModel):
    """The ``stats`` block rclone attaches to periodic progress lines."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    bytes: Optional[int] = None
    checks: Optional[int] = None
    deletes: Optional[int] = None
    deleted_dirs: Optional[int] = Field(None, alias="deletedDirs")
    elapsed_time: Optional[float] = Field(None, alias="elapsedTime")
    errors: Optional[int] = None
    eta: Optional[float] = None
    fatal_error: Optional[bool] = Field(None, alias="fatalError")
    renames: Optional[int] = None
    retry_error: Optional[bool] = Field(None, alias="retryError")
    speed: Optional[float] = None
    total_bytes: Optional[int] = Field(None, alias="totalBytes")
    total_checks: Optional[int] = Field(None, alias="totalChecks")
    total_transfers: Optional[int] = Field(None, alias="totalTransfers")
    transfer_time: Optional[float] = Field(None, alias="transferTime")
    transfers: Optional[int] = None
    transferring: Optional[list[TransferringItem]] = None

    def to_progress(self) -> Progress:
        return Progress(
            bytes_transferred=self.bytes or 0,
            total_bytes=self.total_bytes or 0,
            transfers_done=self.transfers or 0,
            total_transfers=self.total_transfers or 0,
            checks_done=self.checks or 0,
            total_checks=self.total_checks or 0,
            elapsed_seconds=self.elapsed_time or 0.0,
            speed=self.speed or 0.0,
            eta_seconds=int(self.eta) if self.eta is not None else None,
            errors=self.errors or 0,
            transferring=[item.name for item in self.transferring or [] if item.name],
        )


class RcloneLogEntry(BaseModel):
    """One ``--use-json-log`` record. Unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    level: str = ""
    msg: str = ""
    time: str = ""
    object: Optional[str] = None
    object_type: Optional[str] = Field(None, alias="objectType")
    source: Optional[str] = None
    size: Optional[int] = None
    stats: Optional[RcloneStats] = None

    @property
    def timestamp(self) -> datetime:
        return parse_timestamp(self.time) or _now()

    @property
    def is_error(self) -> bool:
        return self.level.lower() in ("error", "critical")

    @property
    def file_change(self) -> Optional[FileChangeRecord]:
        """File change described by this record, if it names an object and a known verb."""
        if not self.object or self.is_error:
            return None
        operation = parse_operation(self.msg)
        if operation is None:
            return None
        return FileChangeRecord(timestamp=self.timestamp, path=self.object, operation=operation)


def _now() -> datetime:
    return datetime.now().astimezone()


def _strptime(text: str, *formats: str) -> Optional[datetime]:
    for fmt in formats:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        # Naive timestamps are local time
        return parsed if parsed.tzinfo else parsed.astimezone()
    return None


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, trying fractional seconds first.

    Args:
        value: e.g. '2026-02-14T10:30:00.123456789+01:00' or '2026-02-14T10:30:00Z'.

    Returns:
        Timezone-aware datetime, or None if the value is not a timestamp.
    """
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"

    match = _FRACTION_RE.match(text)
    if match:
        base, fraction, tz = match.groups()
        # strptime only understands microseconds
        fraction = fraction[:6].ljust(6, "0")
        parsed = _strptime(f"{base}.{fraction}{tz}", "%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%dT%H:%M:%S.%f")
        if parsed:
            return parsed

    return _strptime(text, "%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%dT%H:%M:%S")


def parse_operation(message: str) -> Optional[FileOperation]:
    """Map an rclone message like 'Copied (new)' to a file operation."""
    lowered = message.lower()

    if "copied" in lowered or "copy" in lowered:
        if "new" in lowered:
            return FileOperation.CREATED
        return FileOperation.UPDATED
    if "deleted" in lowered or "delete" in lowered:
        return FileOperation.DELETED
    if "renamed" in lowered or "rename" in lowered or "moved" in lowered:
        return FileOperation.RENAMED
    if "updated" in lowered or "update" in lowered:
        return FileOperation.UPDATED

    return None


def parse_line(line: str) -> LogEvent:
    """Map one raw log line to exactly one event.

    Never raises: anything that cannot be understood becomes Unrecognized.
    """
    clean_line = log_patterns.strip_ansi(line).strip()

    if clean_line.startswith("{") and clean_line.endswith("}"):
        return _parse_structured_line(clean_line)

    return _parse_plain_text_line(clean_line)


def _parse_structured_line(line: str) -> LogEvent:
    try:
        data = json.loads(line)
        entry = RcloneLogEntry.model_validate(data)
    except (json.JSONDecodeError, ValidationError) as e:
        logger.debug(f"Skipping malformed JSON log line: {e}")
        return Unrecognized(timestamp=_now(), raw=line)

    timestamp = entry.timestamp
    message = log_patterns.strip_ansi(entry.msg)

    # A failed transfer names its object too, so severity goes first
    if entry.is_error:
        if entry.object:
            message = f"{entry.object}: {message}"
        error_message = log_patterns.clean_error_message(message, limit=MAX_STRUCTURED_ERROR_LENGTH)
        if error_message:
            return CriticalError(timestamp=timestamp, raw=line, message=error_message)
        return Unrecognized(timestamp=timestamp, raw=line)

    change = entry.file_change
    if change is not None:
        return FileChange(timestamp=timestamp, raw=line, change=change)

    if entry.stats is not None:
        return StatsUpdate(timestamp=timestamp, raw=line, progress=entry.stats.to_progress())

    return _classify_message(message, timestamp, line)


def _parse_plain_text_line(line: str) -> LogEvent:
    timestamp = None
    message = line

    match = _SCRIPT_LINE_RE.match(line)
    if match:
        timestamp = _strptime(match.group(1), "%Y-%m-%d %H:%M:%S")
        message = match.group(2)
    else:
        match = _RCLONE_LINE_RE.match(line)
        if match:
            timestamp = _strptime(match.group(1), "%Y/%m/%d %H:%M:%S")
            message = match.group(2)

    timestamp = timestamp or _now()

    marker_index = message.upper().find(log_patterns.CRITICAL_MARKER)
    if marker_index != -1:
        remainder = message[marker_index + len(log_patterns.CRITICAL_MARKER):]
        error_message = log_patterns.clean_error_message(remainder)
        if error_message:
            return CriticalError(timestamp=timestamp, raw=line, message=error_message)

    return _classify_message(message, timestamp, line)


def _classify_message(message: str, timestamp: datetime, raw: str) -> LogEvent:
    if log_patterns.matches("sync_started", message):
        return SyncStarted(timestamp=timestamp, raw=raw)

    if log_patterns.matches("sync_completed", message):
        return SyncCompleted(timestamp=timestamp, raw=raw)

    if log_patterns.matches("sync_failed", message):
        return SyncFailed(
            timestamp=timestamp,
            raw=raw,
            exit_code=log_patterns.extract_exit_code(message),
            message=log_patterns.clean_error_message(message),
        )

    if log_patterns.matches("drive_not_mounted", message):
        return DriveNotMounted(timestamp=timestamp, raw=raw)

    if log_patterns.matches("already_running", message):
        return AlreadyRunning(timestamp=timestamp, raw=raw)

    return Unrecognized(timestamp=timestamp, raw=raw)
