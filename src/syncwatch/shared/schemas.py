"""Pydantic schemas for SyncWatch."""

from datetime import datetime
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Optional

from pydantic import BaseModel, Field

from syncwatch.shared.formatters import format_bytes, format_eta, format_speed


class JobStatus(str, Enum):
    """Possible states of a sync job."""

    NOT_CONFIGURED = "NOT_CONFIGURED"  # Missing remote or local path
    IDLE = "IDLE"  # Waiting for the next run
    SYNCING = "SYNCING"  # bisync currently running
    PAUSED = "PAUSED"  # Paused by the user
    ERROR = "ERROR"  # Last run failed
    DRIVE_NOT_MOUNTED = "DRIVE_NOT_MOUNTED"  # External drive missing


def get_status_emoji(status: JobStatus) -> str:
    return {
        JobStatus.IDLE: "✅",
        JobStatus.SYNCING: "🔄",
        JobStatus.PAUSED: "⏸️",
        JobStatus.ERROR: "❌",
        JobStatus.DRIVE_NOT_MOUNTED: "💾",
        JobStatus.NOT_CONFIGURED: "⚙️",
    }.get(status, "❓")


class TriggerResult(str, Enum):
    """Outcome of a sync trigger attempt."""

    STARTED = "STARTED"
    DISABLED = "DISABLED"
    NOT_CONFIGURED = "NOT_CONFIGURED"
    PAUSED = "PAUSED"
    DRIVE_NOT_MOUNTED = "DRIVE_NOT_MOUNTED"
    SYNCING = "SYNCING"
    ALREADY_RUNNING = "ALREADY_RUNNING"
    LOCKED = "LOCKED"
    FAILED = "FAILED"


class Job(BaseModel):
    """One configured local path <-> remote path sync relationship."""

    id: str
    name: str = ""
    remote: str = ""  # e.g. "synology-kaiju:"
    remote_path: str = ""  # e.g. "Kaiju"
    local_path: str = ""
    mount_path: str = ""  # Empty if the local path is not on an external drive
    interval_minutes: int = 15
    extra_flags: str = ""
    enabled: bool = False

    @property
    def short_id(self) -> str:
        """Short ID used in file names (first 8 chars of the id)."""
        return self.id[:8].lower()

    @property
    def full_remote(self) -> str:
        """Full remote for rclone, e.g. 'synology-kaiju:Kaiju'."""
        remote = self.remote[:-1] if self.remote.endswith(":") else self.remote
        return f"{remote}:{self.remote_path}"

    @property
    def is_configured(self) -> bool:
        return all([self.name, self.remote, self.remote_path, self.local_path])

    def log_path(self, log_dir: Path) -> Path:
        return Path(log_dir) / f"synctray-sync-{self.short_id}.log"

    def lock_path(self, lock_dir: Path) -> Path:
        return Path(lock_dir) / f"synctray-sync-{self.short_id}.lock"

    def config_path(self, config_dir: Path) -> Path:
        return Path(config_dir) / f"{self.short_id}.json"


class Progress(BaseModel):
    """Snapshot of an in-flight transfer, taken from rclone stats."""

    bytes_transferred: int = 0
    total_bytes: int = 0
    transfers_done: int = 0
    total_transfers: int = 0
    checks_done: int = 0
    total_checks: int = 0
    elapsed_seconds: float = 0.0
    speed: float = 0.0  # bytes per second
    eta_seconds: Optional[int] = None
    errors: int = 0
    transferring: list[str] = Field(default_factory=list)

    @property
    def fraction(self) -> Optional[float]:
        if self.total_bytes <= 0:
            return None
        return min(self.bytes_transferred / self.total_bytes, 1.0)

    def describe(self) -> str:
        """Human readable one-line summary, e.g. '1.5 MB / 3.0 MB (50%) at 512.0 KB/s, ETA 3s'."""
        head = f"{format_bytes(self.bytes_transferred)} / {format_bytes(self.total_bytes)}"
        if self.fraction is not None:
            head += f" ({self.fraction:.0%})"
        extras = []
        if self.speed > 0:
            extras.append(f"at {format_speed(self.speed)}")
        if self.eta_seconds is not None:
            extras.append(f"ETA {format_eta(self.eta_seconds)}")
        if not extras:
            return head
        return f"{head} {', '.join(extras)}"


class FileOperation(str, Enum):
    """Kind of change rclone reported for a file."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    RENAMED = "renamed"
    UNKNOWN = "unknown"


class FileChangeRecord(BaseModel):
    """One file mutation observed in a job's log."""

    timestamp: datetime
    path: str
    operation: FileOperation = FileOperation.UNKNOWN
    job_name: str = ""

    @property
    def file_name(self) -> str:
        return PurePosixPath(self.path).name

    @property
    def directory(self) -> str:
        parent = str(PurePosixPath(self.path).parent)
        return "/" if parent in ("", ".") else parent


class JobSnapshot(BaseModel):
    """Consistent, read-only view of one job for the presentation layer."""

    job_id: str
    name: str
    status: JobStatus
    error_message: Optional[str] = None
    progress: Optional[Progress] = None
    recent_changes: list[FileChangeRecord] = Field(default_factory=list)
    enabled: bool = False
    paused: bool = False
    muted: bool = False
    last_sync_time: Optional[datetime] = None
    last_exit_code: Optional[int] = None


class StatusReport(BaseModel):
    """Status report written to status.json."""

    timestamp: datetime
    status: JobStatus
    error_message: Optional[str] = None
    jobs: list[JobSnapshot] = Field(default_factory=list)
    recent_changes: list[FileChangeRecord] = Field(default_factory=list)
