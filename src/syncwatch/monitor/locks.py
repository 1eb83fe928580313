"""Advisory lock files that mark a sync job's external process as running.

A lock is only ever checked for existence and age. The sync script writes
its PID into the same file, which lets startup cleanup spot locks left by a
process that no longer exists.
"""

import logging
import time
from enum import Enum
from pathlib import Path
from typing import Optional

import psutil

logger = logging.getLogger(__name__)


class LockState(str, Enum):
    ABSENT = "absent"
    HELD = "held"
    STALE = "stale"


def lock_age(path: Path, now: Optional[float] = None) -> Optional[float]:
    """Seconds since the lock was last modified, or None if there is no lock."""
    try:
        mtime = Path(path).stat().st_mtime
    except FileNotFoundError:
        return None
    return (now if now is not None else time.time()) - mtime


def check_lock(path: Path, stale_seconds: float, now: Optional[float] = None) -> LockState:
    age = lock_age(path, now)
    if age is None:
        return LockState.ABSENT
    if age > stale_seconds:
        return LockState.STALE
    return LockState.HELD


def read_lock_pid(path: Path) -> Optional[int]:
    try:
        content = Path(path).read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError):
        return None
    return int(content) if content.isdigit() else None


def acquire_lock(path: Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch()


def release_lock(path: Path) -> bool:
    """Remove the lock. Returns True if a lock file was removed."""
    try:
        Path(path).unlink()
    except FileNotFoundError:
        return False
    return True


def cleanup_stale_lock(path: Path, stale_seconds: float, now: Optional[float] = None) -> bool:
    """Remove a lock left behind by a crashed run.

    A lock is stale when it is older than stale_seconds, or when it records
    a PID that is no longer running.

    Returns:
        True if the lock was removed.
    """
    state = check_lock(path, stale_seconds, now)
    if state == LockState.ABSENT:
        return False

    reason = None
    if state == LockState.STALE:
        reason = f"older than {stale_seconds}s"
    else:
        pid = read_lock_pid(path)
        if pid is not None and not psutil.pid_exists(pid):
            reason = f"process {pid} is not running"

    if reason is None:
        return False

    removed = release_lock(path)
    if removed:
        logger.info(f"Removed stale lock {path} ({reason})")
    return removed
