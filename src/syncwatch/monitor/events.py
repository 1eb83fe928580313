"""Typed events produced from single log lines."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from syncwatch.shared.schemas import FileChangeRecord, Progress


class LogEvent(BaseModel):
    """Base class for everything the log parser can emit."""

    timestamp: datetime
    raw: str = ""


class SyncStarted(LogEvent):
    pass


class StatsUpdate(LogEvent):
    progress: Progress


class FileChange(LogEvent):
    change: FileChangeRecord


class SyncCompleted(LogEvent):
    pass


class SyncFailed(LogEvent):
    exit_code: Optional[int] = None
    message: Optional[str] = None


class DriveNotMounted(LogEvent):
    pass


class AlreadyRunning(LogEvent):
    pass


class CriticalError(LogEvent):
    message: str


class Unrecognized(LogEvent):
    pass
