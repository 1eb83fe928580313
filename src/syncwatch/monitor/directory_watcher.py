"""Watch a job's local directory and debounce activity into one "settled" signal."""

import logging
import os
import threading
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

SettledCallback = Callable[[], None]

TEMP_SUFFIXES = (".tmp", ".temp", ".swp", ".part", ".partial", "~")
OS_METADATA_FILES = {"thumbs.db", "desktop.ini", "icon\r"}
# Access-only events, nothing changed on disk
IGNORED_EVENT_TYPES = {"opened", "closed_no_write"}

STOP_TIMEOUT_SECONDS = 5.0


def is_ignored_path(path) -> bool:
    """Check whether a changed path is sync/OS noise rather than user data.

    Hidden files cover .DS_Store, AppleDouble "._" sidecars and the sync
    tool's own ".synctray-check" access-check file.
    """
    name = os.path.basename(os.fsdecode(path).rstrip("/\\"))
    if not name:
        return False
    if name.startswith(".") or name.startswith("~$"):
        return True
    lowered = name.lower()
    return lowered.endswith(TEMP_SUFFIXES) or lowered in OS_METADATA_FILES


class _DirectoryEventHandler(FileSystemEventHandler):
    def __init__(self, watcher: "DirectoryChangeWatcher") -> None:
        super().__init__()
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in IGNORED_EVENT_TYPES:
            return
        # A directory "modified" event only echoes a change to one of its children
        if event.is_directory and event.event_type == "modified":
            return
        paths = [event.src_path, getattr(event, "dest_path", "")]
        for path in paths:
            if path and self._watcher.handle_path(path):
                break


class DirectoryChangeWatcher:
    """Emit a single settled signal once local activity pauses for the debounce window."""

    def __init__(
        self,
        path: Path,
        on_settled: SettledCallback,
        debounce_seconds: float = 15.0,
        timer_factory: Callable = threading.Timer,
        label: str = "",
    ) -> None:
        self.path = Path(path)
        self.debounce_seconds = debounce_seconds
        self.label = label or self.path.name
        self._on_settled = on_settled
        self._timer_factory = timer_factory
        self._root = os.path.normcase(os.path.realpath(self.path))

        self._state_lock = threading.Lock()
        self._emit_lock = threading.RLock()
        self._observer: Optional[Observer] = None
        self._timer = None
        self._generation = 0
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_pending(self) -> bool:
        """True while a debounce timer is waiting to fire."""
        return self._timer is not None

    def start(self) -> None:
        """Start watching. A no-op while already running or if the directory is missing."""
        with self._state_lock:
            if self._running:
                return

            if not self.path.is_dir():
                logger.warning(f"[{self.label}] Directory {self.path} does not exist, not watching")
                return

            observer = Observer()
            try:
                observer.schedule(_DirectoryEventHandler(self), str(self.path), recursive=True)
                observer.daemon = True
                observer.start()
            except OSError as e:
                logger.warning(f"[{self.label}] Could not watch {self.path}: {e}")
                return

            self._observer = observer
            self._running = True
        logger.debug(f"[{self.label}] Watching directory {self.path}")

    def stop(self) -> None:
        """Stop watching and cancel a pending signal. No signal fires after this returns."""
        with self._state_lock:
            if not self._running:
                return
            self._running = False
            self._generation += 1
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            observer, self._observer = self._observer, None

        if observer is not None:
            observer.stop()
            if observer is not threading.current_thread():
                observer.join(timeout=STOP_TIMEOUT_SECONDS)

        with self._emit_lock:
            pass
        logger.debug(f"[{self.label}] Stopped watching directory {self.path}")

    def handle_path(self, path) -> bool:
        """Register activity on a path.

        Returns:
            True if the change qualified and restarted the debounce timer.
        """
        normalized = os.path.normcase(os.path.realpath(os.fsdecode(path)))
        if normalized != self._root and not normalized.startswith(self._root + os.sep):
            return False
        if is_ignored_path(normalized):
            return False

        with self._state_lock:
            if not self._running:
                return False
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            timer = self._timer_factory(self.debounce_seconds, self._fire, args=(self._generation,))
            timer.daemon = True
            self._timer = timer
            timer.start()

        logger.debug(f"[{self.label}] Activity on {normalized}, waiting {self.debounce_seconds}s to settle")
        return True

    def _fire(self, generation: int) -> None:
        with self._emit_lock:
            with self._state_lock:
                if not self._running or generation != self._generation:
                    return
                self._timer = None

            logger.info(f"[{self.label}] Local changes settled")
            try:
                self._on_settled()
            except Exception as e:
                logger.error(f"[{self.label}] Error handling settled signal: {e}", exc_info=True)
