"""SyncWatch monitor - runs the job coordinator and keeps status.json current."""

import contextlib
import json
import logging
import sys
import tempfile
import threading
import time
from pathlib import Path
from typing import Optional

from syncwatch.monitor.coordinator import JobCoordinator
from syncwatch.shared.config import AppConfig, MonitorConfig, get_config
from syncwatch.shared.schemas import JobStatus, StatusReport, get_status_emoji

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(config: MonitorConfig) -> None:
    """Configure root logging: stdout plus the optional log file."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.log_file:
        handlers.append(logging.FileHandler(config.log_file, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )


def write_status_atomic(report: StatusReport, path: Path) -> None:
    """Write status report to file atomically.

    Uses write-to-temp-then-rename to avoid partial reads.

    Args:
        report: The status report to write.
        path: The target file path.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_fd, temp_path = tempfile.mkstemp(suffix=".json", dir=path.parent)
    try:
        with open(temp_fd, "w", encoding="utf-8") as f:
            json.dump(report.model_dump(mode="json"), f, indent=2)
        Path(temp_path).replace(path)
        logger.debug(f"Status written to {path}")
    except Exception:
        with contextlib.suppress(FileNotFoundError):
            Path(temp_path).unlink()
        raise


class StatusWriter:
    """Coordinator listener that persists the status report and logs global changes."""

    def __init__(self, coordinator: JobCoordinator, path: Path) -> None:
        self.coordinator = coordinator
        self.path = path
        self._lock = threading.Lock()
        self._last_status: Optional[JobStatus] = None

    def __call__(self) -> None:
        report = self.coordinator.status_report()
        with self._lock:
            if report.status != self._last_status:
                detail = f": {report.error_message}" if report.error_message else ""
                logger.info(f"{get_status_emoji(report.status)} Overall status: {report.status.value}{detail}")
                self._last_status = report.status
            try:
                write_status_atomic(report, self.path)
            except OSError as e:
                logger.error(f"Failed to write status file {self.path}: {e}")


def _should_stop(shutdown_event) -> bool:
    return shutdown_event is not None and shutdown_event.is_set()


def run_monitor(
    shutdown_event=None,
    config: Optional[AppConfig] = None,
    coordinator: Optional[JobCoordinator] = None,
) -> None:
    """Run the monitor loop until shutdown_event is set (forever if None).

    Args:
        shutdown_event: Anything with is_set(), checked between iterations.
        config: Application config, defaults to get_config().
        coordinator: Existing coordinator to drive, e.g. one shared with the dashboard.
    """
    config = config or get_config()
    coordinator = coordinator or JobCoordinator.from_config(config)

    status_path = Path(config.monitor.status_file)
    interval = config.watcher.mount_check_interval_seconds

    logger.info("=" * 60)
    logger.info("SyncWatch Monitor Starting")
    logger.info(f"Jobs: {len(config.jobs)} configured, {len(config.enabled_jobs)} enabled")
    for job in config.jobs:
        state = "enabled" if job.enabled else "disabled"
        logger.info(f"  {job.name or job.id}: {job.local_path} <-> {job.full_remote} ({state})")
    logger.info(f"Log Directory: {config.paths.log_dir}")
    logger.info(f"Status File: {status_path.absolute()}")
    logger.info(f"Notifications Enabled: {config.notifications.enabled}")
    logger.info("=" * 60)

    writer = StatusWriter(coordinator, status_path)
    coordinator.add_listener(writer)
    coordinator.start()
    writer()

    try:
        while not _should_stop(shutdown_event):
            coordinator.check_mounts()
            coordinator.reap_processes()

            deadline = time.monotonic() + interval
            while time.monotonic() < deadline and not _should_stop(shutdown_event):
                time.sleep(min(0.5, interval))
    except KeyboardInterrupt:
        logger.info("Monitor interrupted by user")
    finally:
        coordinator.stop()
        writer()
        logger.info("Monitor stopped")
