"""Tail a sync job's log file, surviving rotation, truncation and replacement.

Filesystem notifications (watchdog) give low latency but can miss events on
rapid rewrites, sleep/wake or network filesystems, so a poll timer runs
alongside them. Notifications only wake the poll thread early; every read goes
through the same read-and-advance routine under one lock, so a line is never
delivered twice.
"""

import logging
import os
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

LinesCallback = Callable[[list[str]], None]

# Consecutive failed reads of an existing file before we warn about it
PERSISTENT_FAILURE_THRESHOLD = 10
STOP_TIMEOUT_SECONDS = 5.0


@dataclass
class WatcherCursor:
    """Read position within one specific file."""

    offset: int = 0
    device: Optional[int] = None
    inode: Optional[int] = None
    mtime: float = 0.0

    def same_file(self, st: os.stat_result) -> bool:
        return self.inode is not None and (st.st_dev, st.st_ino) == (self.device, self.inode)


def _normalize(path) -> str:
    return os.path.normcase(os.path.abspath(os.fsdecode(path)))


def _split_lines(data: bytes) -> list[str]:
    text = data.decode("utf-8", errors="replace")
    return [line.strip() for line in text.split("\n") if line.strip()]


class _LogFileEventHandler(FileSystemEventHandler):
    """Wakes the watcher when anything happens to its file."""

    def __init__(self, watcher: "LogFileWatcher") -> None:
        super().__init__()
        self._watcher = watcher
        self._target = _normalize(watcher.path)

    def on_any_event(self, event: FileSystemEvent) -> None:
        paths = [event.src_path, getattr(event, "dest_path", "")]
        if any(path and _normalize(path) == self._target for path in paths):
            self._watcher.wake()


class LogFileWatcher:
    """Deliver every complete line appended to a log file, once and in order."""

    def __init__(
        self,
        path: Path,
        on_lines: LinesCallback,
        poll_interval: float = 2.5,
        replay_lines: int = 50,
        replay_max_bytes: int = 64 * 1024,
        cursor: Optional[WatcherCursor] = None,
        label: str = "",
        on_replay: Optional[LinesCallback] = None,
    ) -> None:
        self.path = Path(path)
        self.poll_interval = poll_interval
        self.replay_lines = replay_lines
        self.replay_max_bytes = replay_max_bytes
        self.label = label or self.path.name
        self._on_lines = on_lines
        self._on_replay = on_replay or on_lines
        self._cursor = replace(cursor) if cursor is not None else None

        self._read_lock = threading.RLock()
        self._state_lock = threading.Lock()
        self._wake_event = threading.Event()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._observer: Optional[Observer] = None
        self._running = False
        self._failures = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def cursor(self) -> Optional[WatcherCursor]:
        """Copy of the current read position (None until the file was first seen)."""
        with self._read_lock:
            return replace(self._cursor) if self._cursor is not None else None

    def start(self) -> None:
        """Start watching. A no-op while already running."""
        with self._state_lock:
            if self._running:
                return
            self._running = True
            self._stop_event.clear()

        if self._cursor is None:
            self._replay_tail()

        thread = threading.Thread(target=self._run, name=f"log-watcher-{self.label}", daemon=True)
        with self._state_lock:
            self._thread = thread
        thread.start()
        logger.debug(f"[{self.label}] Watching log {self.path}")

    def stop(self) -> None:
        """Stop watching. No callback fires after this returns."""
        with self._state_lock:
            if not self._running:
                return
            self._running = False
            self._stop_event.set()
            self._wake_event.set()
            observer, self._observer = self._observer, None
            thread, self._thread = self._thread, None

        if observer is not None:
            observer.stop()
            observer.join(timeout=STOP_TIMEOUT_SECONDS)

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=STOP_TIMEOUT_SECONDS)
            if thread.is_alive():
                logger.warning(f"[{self.label}] Log watcher thread did not exit in time")

        # Wait for a delivery that may still be in flight
        with self._read_lock:
            pass
        logger.debug(f"[{self.label}] Stopped watching log {self.path}")

    def wake(self) -> None:
        """Ask the poll thread to read now instead of waiting for the timer."""
        self._wake_event.set()

    def poll(self) -> int:
        """Read and deliver whatever complete lines were appended since the last read.

        Returns:
            Number of lines delivered.
        """
        with self._read_lock:
            if self._stop_event.is_set():
                return 0
            lines = self._read_new_lines()
            if lines:
                self._deliver(lines)
            return len(lines)

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self._ensure_observer()
            self.poll()
            self._wake_event.wait(self.poll_interval)
            self._wake_event.clear()

    def _ensure_observer(self) -> None:
        if self._observer is not None and self._observer.is_alive():
            return

        parent = self.path.parent
        if not parent.is_dir():
            return

        observer = Observer()
        try:
            observer.schedule(_LogFileEventHandler(self), str(parent), recursive=False)
            observer.daemon = True
            observer.start()
        except OSError as e:
            logger.debug(f"[{self.label}] Could not watch {parent}, polling only: {e}")
            return

        with self._state_lock:
            if self._running:
                self._observer = observer
                return
        observer.stop()

    def _read_new_lines(self) -> list[str]:
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            return []
        except OSError as e:
            self._note_failure(e)
            return []

        cursor = self._cursor or WatcherCursor()
        if not cursor.same_file(st) or st.st_size < cursor.offset:
            if cursor.inode is not None:
                logger.info(f"[{self.label}] Log rotated or truncated, reading {self.path} from the start")
            cursor = WatcherCursor(offset=0, device=st.st_dev, inode=st.st_ino, mtime=st.st_mtime)
            self._cursor = cursor

        if st.st_size == cursor.offset:
            cursor.mtime = st.st_mtime
            return []

        try:
            with open(self.path, "rb") as f:
                fst = os.fstat(f.fileno())
                if (fst.st_dev, fst.st_ino) != (cursor.device, cursor.inode):
                    # Replaced between stat and open, pick it up next time
                    return []
                f.seek(cursor.offset)
                data = f.read()
        except OSError as e:
            self._note_failure(e)
            return []

        self._failures = 0
        cursor.mtime = fst.st_mtime

        end = data.rfind(b"\n")
        if end == -1:
            # Only a partial line so far
            return []

        cursor.offset += end + 1
        return _split_lines(data[: end + 1])

    def _replay_tail(self) -> None:
        """Deliver the last few lines of an existing log so state can be rebuilt."""
        with self._read_lock:
            try:
                with open(self.path, "rb") as f:
                    fst = os.fstat(f.fileno())
                    start = max(0, fst.st_size - self.replay_max_bytes)
                    f.seek(start)
                    data = f.read(fst.st_size - start)
            except FileNotFoundError:
                logger.debug(f"[{self.label}] Log {self.path} does not exist yet")
                return
            except OSError as e:
                self._note_failure(e)
                return

            end = data.rfind(b"\n")
            consumed = data[: end + 1] if end != -1 else b""
            self._cursor = WatcherCursor(
                offset=start + len(consumed),
                device=fst.st_dev,
                inode=fst.st_ino,
                mtime=fst.st_mtime,
            )

            if start > 0:
                # The window starts mid-line
                consumed = consumed[consumed.find(b"\n") + 1 :]

            if self.replay_lines <= 0:
                return
            lines = _split_lines(consumed)[-self.replay_lines :]
            if lines:
                logger.debug(f"[{self.label}] Replaying {len(lines)} recent log lines")
                self._deliver(lines, self._on_replay)

    def _deliver(self, lines: list[str], callback: Optional[LinesCallback] = None) -> None:
        try:
            (callback or self._on_lines)(lines)
        except Exception as e:
            logger.error(f"[{self.label}] Error handling log lines: {e}", exc_info=True)

    def _note_failure(self, error: OSError) -> None:
        self._failures += 1
        if self._failures == PERSISTENT_FAILURE_THRESHOLD:
            logger.warning(f"[{self.label}] Log {self.path} unreadable for {self._failures} polls: {error}")
        else:
            logger.debug(f"[{self.label}] Could not read {self.path}: {error}")
