"""Per-job state machine that turns log events and local activity into job state.

All job state lives in one map guarded by one lock. Watcher threads call in
with raw lines or settled signals; notifications, process launches and
listener callbacks run after the lock is released. Readers only ever get
snapshot copies.
"""

import logging
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from syncwatch.monitor import locks
from syncwatch.monitor.directory_watcher import DirectoryChangeWatcher
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
)
from syncwatch.monitor.log_parser import parse_line
from syncwatch.monitor.log_patterns import ErrorClass, classify_error
from syncwatch.monitor.log_watcher import LogFileWatcher, WatcherCursor
from syncwatch.monitor.runner import MountProbe, ScriptSyncRunner, SyncRunner, path_exists
from syncwatch.shared.config import AppConfig
from syncwatch.shared.notifier import NotificationSink, Notifier
from syncwatch.shared.schemas import (
    FileChangeRecord,
    Job,
    JobSnapshot,
    JobStatus,
    Progress,
    StatusReport,
    TriggerResult,
    get_status_emoji,
)

logger = logging.getLogger(__name__)

Effect = Callable[[], None]
Listener = Callable[[], None]

# Error lines kept per run while choosing the message to show
MAX_RUN_ERRORS = 20


@dataclass
class _JobRecord:
    job: Job
    status: JobStatus = JobStatus.IDLE
    error_message: Optional[str] = None
    progress: Optional[Progress] = None
    recent_changes: list[FileChangeRecord] = field(default_factory=list)
    pending_changes: list[FileChangeRecord] = field(default_factory=list)
    run_errors: list[str] = field(default_factory=list)
    paused: bool = False
    muted: bool = False
    externally_running: bool = False
    last_sync_time: Optional[datetime] = None
    last_exit_code: Optional[int] = None
    process: Any = None
    log_watcher: Optional[LogFileWatcher] = None
    # Read position of the last stopped log watcher, resumed on restart
    log_cursor: Optional[WatcherCursor] = None
    directory_watcher: Optional[DirectoryChangeWatcher] = None


def insert_change(changes: list[FileChangeRecord], change: FileChangeRecord, limit: int) -> None:
    """Insert keeping the list newest-first and at most limit long."""
    index = 0
    while index < len(changes) and changes[index].timestamp > change.timestamp:
        index += 1
    changes.insert(index, change)
    del changes[limit:]


class JobCoordinator:
    """Owns the state of every configured job and the controls over them."""

    def __init__(
        self,
        config: AppConfig,
        runner: SyncRunner,
        notifier: NotificationSink,
        mount_probe: MountProbe = path_exists,
        clock: Callable[[], float] = time.time,
        log_watcher_factory: Callable[..., LogFileWatcher] = LogFileWatcher,
        directory_watcher_factory: Callable[..., DirectoryChangeWatcher] = DirectoryChangeWatcher,
    ) -> None:
        self.config = config
        self._runner = runner
        self._notifier = notifier
        self._mount_probe = mount_probe
        self._clock = clock
        self._log_watcher_factory = log_watcher_factory
        self._directory_watcher_factory = directory_watcher_factory

        self._lock = threading.RLock()
        self._lifecycle_lock = threading.RLock()
        self._listeners: list[Listener] = []
        self._recent_changes: list[FileChangeRecord] = []
        self._records: dict[str, _JobRecord] = {}
        for job in config.jobs:
            record = _JobRecord(job=job)
            record.status = self._initial_status(job)
            self._records[job.id] = record

    @classmethod
    def from_config(cls, config: AppConfig) -> "JobCoordinator":
        runner = ScriptSyncRunner(config.paths.script_path, config.paths.config_dir)
        return cls(config, runner, Notifier(config.notifications))

    # Lifecycle

    def start(self) -> None:
        """Clean up stale locks and start watching every enabled job."""
        logger.info(f"Starting coordinator for {len(self._records)} job(s)")
        self.cleanup_stale_locks()
        for job_id in self.job_ids():
            if self._records[job_id].job.enabled:
                self._start_watchers(job_id)

    def stop(self) -> None:
        for job_id in self.job_ids():
            self._stop_watchers(job_id)
        logger.info("Coordinator stopped")

    def cleanup_stale_locks(self) -> int:
        removed = 0
        for job in self.jobs():
            lock_path = job.lock_path(self.config.paths.lock_dir)
            if locks.cleanup_stale_lock(lock_path, self.config.sync.lock_stale_seconds, self._clock()):
                removed += 1
        return removed

    def add_listener(self, listener: Listener) -> None:
        """Register a callback invoked (without arguments) after every state change."""
        self._listeners.append(listener)

    # Read API

    def job_ids(self) -> list[str]:
        with self._lock:
            return list(self._records)

    def jobs(self) -> list[Job]:
        with self._lock:
            return [record.job for record in self._records.values()]

    def snapshot(self, job_id: str) -> JobSnapshot:
        """Consistent view of one job.

        Raises:
            KeyError: Unknown job id.
        """
        with self._lock:
            return self._snapshot(self._records[job_id])

    def snapshots(self) -> list[JobSnapshot]:
        with self._lock:
            return [self._snapshot(record) for record in self._records.values()]

    def recent_changes(self, job_id: Optional[str] = None) -> list[FileChangeRecord]:
        with self._lock:
            if job_id is None:
                return list(self._recent_changes)
            return list(self._records[job_id].recent_changes)

    def global_status(self) -> tuple[JobStatus, Optional[str]]:
        """Derive the overall status from the current job states.

        Returns:
            The status and, for ERROR, the message of the first failing job.
        """
        with self._lock:
            reported = [(record, self._reported_status(record)) for record in self._records.values()]

        if any(status == JobStatus.SYNCING for _, status in reported):
            return JobStatus.SYNCING, None
        for record, status in reported:
            if status == JobStatus.ERROR:
                return JobStatus.ERROR, record.error_message
        if any(record.job.enabled and status == JobStatus.DRIVE_NOT_MOUNTED for record, status in reported):
            return JobStatus.DRIVE_NOT_MOUNTED, None

        active = [(record, status) for record, status in reported if record.job.enabled and record.job.is_configured]
        if not active:
            return JobStatus.NOT_CONFIGURED, None
        if all(status == JobStatus.PAUSED for _, status in active):
            return JobStatus.PAUSED, None
        return JobStatus.IDLE, None

    def status_report(self) -> StatusReport:
        with self._lock:
            jobs = self.snapshots()
            changes = list(self._recent_changes)
            status, message = self.global_status()
        return StatusReport(
            timestamp=datetime.now().astimezone(),
            status=status,
            error_message=message,
            jobs=jobs,
            recent_changes=changes,
        )

    # Log events

    def handle_lines(self, job_id: str, lines: list[str], replay: bool = False) -> None:
        """Apply raw log lines from a job's log, in file order.

        Args:
            job_id: Job whose log the lines come from.
            lines: Complete lines, oldest first.
            replay: The lines are history re-read when watching started. They
                rebuild state but never release the lock or send notifications.
        """
        events = [parse_line(line) for line in lines]
        self._apply_events(job_id, events, replay)

    def apply_event(self, job_id: str, event: LogEvent) -> None:
        self._apply_events(job_id, [event])

    def _apply_events(self, job_id: str, events: list[LogEvent], replay: bool = False) -> None:
        # The lock created for a run that starts later in the batch belongs to that run
        last_start = max((i for i, event in enumerate(events) if isinstance(event, SyncStarted)), default=-1)

        effects: list[Effect] = []
        with self._lock:
            record = self._records.get(job_id)
            if record is None:
                logger.debug(f"Dropping {len(events)} event(s) for unknown job {job_id}")
                return
            changed = False
            for index, event in enumerate(events):
                release_lock = not replay and index > last_start
                changed = self._apply_event(record, event, effects, release_lock, notify=not replay) or changed
            if changed:
                effects.extend(self._listeners)
        self._run_effects(effects)

    def _apply_event(
        self,
        record: _JobRecord,
        event: LogEvent,
        effects: list[Effect],
        release_lock: bool = True,
        notify: bool = True,
    ) -> bool:
        job = record.job

        if isinstance(event, SyncStarted):
            record.error_message = None
            record.progress = None
            record.pending_changes = []
            record.run_errors = []
            record.externally_running = False
            self._set_status(record, JobStatus.SYNCING)
            return True

        if isinstance(event, StatsUpdate):
            if record.status != JobStatus.SYNCING:
                return False
            record.progress = event.progress
            logger.debug(f"[{job.name}] Progress: {event.progress.describe()}")
            return True

        if isinstance(event, FileChange):
            change = event.change.model_copy(update={"job_name": job.name})
            if change.timestamp.tzinfo is None:
                change.timestamp = change.timestamp.astimezone()
            limit = self.config.sync.recent_changes_limit
            insert_change(record.recent_changes, change, limit)
            insert_change(self._recent_changes, change, limit)
            if record.status == JobStatus.SYNCING:
                record.pending_changes.append(change)
            return True

        if isinstance(event, SyncCompleted):
            record.externally_running = False
            if release_lock:
                effects.append(self._release_lock_effect(job))
            if record.status != JobStatus.SYNCING:
                return False
            batch, record.pending_changes = record.pending_changes, []
            record.error_message = None
            record.run_errors = []
            record.progress = None
            record.last_sync_time = event.timestamp
            record.last_exit_code = 0
            self._set_status(record, JobStatus.IDLE)
            if batch and notify and not record.muted:
                effects.append(lambda: self._notifier.notify(job.name, batch))
            return True

        if isinstance(event, SyncFailed):
            record.externally_running = False
            if release_lock:
                effects.append(self._release_lock_effect(job))
            if record.status not in (JobStatus.SYNCING, JobStatus.IDLE, JobStatus.ERROR):
                return False
            self._fail_run(record, event, effects, notify)
            return True

        if isinstance(event, DriveNotMounted):
            if release_lock:
                effects.append(self._release_lock_effect(job))
            record.progress = None
            record.pending_changes = []
            self._set_status(record, JobStatus.DRIVE_NOT_MOUNTED)
            return True

        if isinstance(event, AlreadyRunning):
            logger.info(f"[{job.name}] Sync already running in another process")
            record.externally_running = True
            return False

        if isinstance(event, CriticalError):
            if record.status != JobStatus.SYNCING:
                logger.debug(f"[{job.name}] Ignoring error outside a run: {event.message}")
                return False
            self._record_run_error(record, event.message)
            return True

        return False

    def _record_run_error(self, record: _JobRecord, message: str) -> None:
        if len(record.run_errors) < MAX_RUN_ERRORS:
            record.run_errors.append(message)
        existing = record.error_message
        is_actionable = classify_error(message) == ErrorClass.ACTIONABLE
        if existing is None or (is_actionable and classify_error(existing) != ErrorClass.ACTIONABLE):
            record.error_message = message
        logger.warning(f"[{record.job.name}] {message}")

    def _fail_run(self, record: _JobRecord, event: SyncFailed, effects: list[Effect], notify: bool = True) -> None:
        job = record.job
        candidates = list(record.run_errors)
        if event.message:
            candidates.append(event.message)
        classes = [(message, classify_error(message)) for message in candidates]

        record.progress = None
        record.pending_changes = []
        record.run_errors = []
        record.last_exit_code = event.exit_code

        if any(cls == ErrorClass.TRANSIENT for _, cls in classes):
            logger.info(f"[{job.name}] Ignoring transient failure after resync")
            record.error_message = None
            self._set_status(record, JobStatus.IDLE)
            return

        message = next((m for m, cls in classes if cls == ErrorClass.ACTIONABLE), None)
        if message is None:
            message = next((m for m, cls in classes if cls == ErrorClass.OTHER), None)
        if message is None:
            message = "Sync failed"
            if event.exit_code is not None:
                message += f" (exit code {event.exit_code})"

        record.error_message = message
        self._set_status(record, JobStatus.ERROR)
        if notify and not record.muted:
            effects.append(lambda: self._notifier.notify_error(job.name, message))

    # Mount status

    def check_mounts(self) -> None:
        """Probe monitored mount paths and move jobs in or out of DRIVE_NOT_MOUNTED."""
        with self._lock:
            targets = [
                (record.job.id, record.job.mount_path)
                for record in self._records.values()
                if record.job.enabled and record.job.mount_path
            ]

        probed = {job_id: self._probe(path) for job_id, path in targets}

        effects: list[Effect] = []
        restart: list[str] = []
        with self._lock:
            for job_id, mounted in probed.items():
                record = self._records.get(job_id)
                if record is None or record.status == JobStatus.NOT_CONFIGURED:
                    continue
                if not mounted and record.status != JobStatus.DRIVE_NOT_MOUNTED:
                    logger.warning(f"[{record.job.name}] Drive not mounted: {record.job.mount_path}")
                    record.progress = None
                    record.pending_changes = []
                    self._set_status(record, JobStatus.DRIVE_NOT_MOUNTED)
                    effects.extend(self._listeners)
                elif mounted and record.status == JobStatus.DRIVE_NOT_MOUNTED:
                    logger.info(f"[{record.job.name}] Drive mounted again: {record.job.mount_path}")
                    self._set_status(record, JobStatus.IDLE)
                    effects.extend(self._listeners)
                    restart.append(job_id)
        self._run_effects(effects)

        for job_id in restart:
            self._start_watchers(job_id)

    def reap_processes(self) -> None:
        """Collect exit status of finished sync processes so they do not linger."""
        with self._lock:
            for record in self._records.values():
                process = record.process
                poll = getattr(process, "poll", None)
                if poll is not None and poll() is not None:
                    logger.debug(f"[{record.job.name}] Sync process exited with {process.returncode}")
                    record.process = None

    def _probe(self, path: str) -> bool:
        try:
            return self._mount_probe(path)
        except OSError as e:
            logger.debug(f"Mount probe failed for {path}: {e}")
            return False

    # Triggering

    def trigger_sync(self, job_id: Optional[str] = None) -> dict[str, TriggerResult]:
        """Manually start a sync for one job, or for every enabled job.

        Raises:
            KeyError: Unknown job id.
        """
        if job_id is None:
            targets = [job.id for job in self.jobs() if job.enabled]
        else:
            with self._lock:
                if job_id not in self._records:
                    raise KeyError(job_id)
            targets = [job_id]
        return {target: self._try_trigger(target, "manual request") for target in targets}

    def handle_settled(self, job_id: str) -> Optional[TriggerResult]:
        """React to local activity settling in a job's directory."""
        if not self.config.sync.trigger_on_activity:
            return None
        with self._lock:
            record = self._records.get(job_id)
            if record is None or not record.job.enabled:
                return None
        return self._try_trigger(job_id, "local changes")

    def _refusal(self, record: _JobRecord, mounted: bool) -> Optional[TriggerResult]:
        job = record.job
        if not job.enabled:
            return TriggerResult.DISABLED
        if not job.is_configured:
            return TriggerResult.NOT_CONFIGURED
        if record.paused:
            return TriggerResult.PAUSED
        if record.status == JobStatus.DRIVE_NOT_MOUNTED or not mounted:
            return TriggerResult.DRIVE_NOT_MOUNTED
        if record.status == JobStatus.SYNCING:
            return TriggerResult.SYNCING
        if record.externally_running:
            return TriggerResult.ALREADY_RUNNING
        return None

    def _try_trigger(self, job_id: str, reason: str) -> TriggerResult:
        # Probe outside the lock, a network mount can hang
        with self._lock:
            mount_path = self._records[job_id].job.mount_path
        mounted = self._probe(mount_path) if mount_path else True

        with self._lock:
            record = self._records[job_id]
            job = record.job
            refusal = self._refusal(record, mounted)
            if refusal is not None:
                logger.info(f"[{job.name}] Not syncing ({reason}): {refusal.value}")
                return refusal

            lock_path = job.lock_path(self.config.paths.lock_dir)
            state = locks.check_lock(lock_path, self.config.sync.lock_stale_seconds, self._clock())
            if state == locks.LockState.HELD:
                logger.info(f"[{job.name}] Not syncing ({reason}): lock {lock_path} is held")
                return TriggerResult.LOCKED
            if state == locks.LockState.STALE:
                logger.warning(f"[{job.name}] Removing stale lock {lock_path}")
                locks.release_lock(lock_path)

            try:
                locks.acquire_lock(lock_path)
            except OSError as e:
                logger.error(f"[{job.name}] Could not create lock {lock_path}: {e}")
                return TriggerResult.FAILED

        logger.info(f"[{job.name}] Triggering sync ({reason})")
        try:
            handle = self._runner.run_sync(job)
        except (OSError, subprocess.SubprocessError) as e:
            logger.error(f"[{job.name}] Failed to start sync: {e}")
            self._launch_failed(job_id, lock_path, f"Failed to start sync: {e}")
            return TriggerResult.FAILED

        with self._lock:
            record = self._records.get(job_id)
            if record is not None:
                record.process = handle
        return TriggerResult.STARTED

    def _launch_failed(self, job_id: str, lock_path, message: str) -> None:
        locks.release_lock(lock_path)
        effects: list[Effect] = []
        with self._lock:
            record = self._records.get(job_id)
            if record is None:
                return
            record.error_message = message
            self._set_status(record, JobStatus.ERROR)
            if not record.muted:
                name = record.job.name
                effects.append(lambda: self._notifier.notify_error(name, message))
            effects.extend(self._listeners)
        self._run_effects(effects)

    # Controls

    def pause(self, job_id: Optional[str] = None) -> None:
        self._set_flag(job_id, "paused", True)

    def resume(self, job_id: Optional[str] = None) -> None:
        self._set_flag(job_id, "paused", False)

    def mute(self, job_id: str) -> None:
        self._set_flag(job_id, "muted", True)

    def unmute(self, job_id: str) -> None:
        self._set_flag(job_id, "muted", False)

    def _set_flag(self, job_id: Optional[str], flag: str, value: bool) -> None:
        effects: list[Effect] = []
        with self._lock:
            records = list(self._records.values()) if job_id is None else [self._records[job_id]]
            for record in records:
                if getattr(record, flag) != value:
                    setattr(record, flag, value)
                    logger.info(f"[{record.job.name}] {flag} = {value}")
                    effects = list(self._listeners)
        self._run_effects(effects)

    def clear_error(self, job_id: str) -> None:
        """Forget a job's error; an ERROR job becomes IDLE."""
        effects: list[Effect] = []
        with self._lock:
            record = self._records[job_id]
            if record.error_message is None and record.status != JobStatus.ERROR:
                return
            record.error_message = None
            record.run_errors = []
            if record.status == JobStatus.ERROR:
                self._set_status(record, JobStatus.IDLE)
            effects.extend(self._listeners)
        self._run_effects(effects)

    def set_enabled(self, job_id: str, enabled: bool) -> None:
        with self._lock:
            record = self._records[job_id]
            if record.job.enabled == enabled:
                return
            job = record.job.model_copy(update={"enabled": enabled})
        initial = self._initial_status(job)

        with self._lock:
            record.job = job
            record.status = initial
            effects = list(self._listeners)
        if enabled:
            self._start_watchers(job_id)
        else:
            self._stop_watchers(job_id)
        self._run_effects(effects)

    def update_job(self, job: Job) -> None:
        """Replace a job's configuration, restarting its watchers if they were running.

        Raises:
            KeyError: Unknown job id.
        """
        self._stop_watchers(job.id)
        initial = self._initial_status(job)
        log_dir = self.config.paths.log_dir
        with self._lock:
            record = self._records[job.id]
            if job.log_path(log_dir) != record.job.log_path(log_dir):
                record.log_cursor = None
            record.job = job
            record.progress = None
            record.pending_changes = []
            record.error_message = None
            record.status = initial
            effects = list(self._listeners)
        if job.enabled:
            self._start_watchers(job.id)
        self._run_effects(effects)

    # Internals

    def _initial_status(self, job: Job) -> JobStatus:
        if not job.is_configured:
            return JobStatus.NOT_CONFIGURED
        if job.enabled and job.mount_path and not self._probe(job.mount_path):
            return JobStatus.DRIVE_NOT_MOUNTED
        return JobStatus.IDLE

    def _reported_status(self, record: _JobRecord) -> JobStatus:
        if record.status == JobStatus.NOT_CONFIGURED:
            return JobStatus.NOT_CONFIGURED
        if record.paused:
            return JobStatus.PAUSED
        return record.status

    def _snapshot(self, record: _JobRecord) -> JobSnapshot:
        status = self._reported_status(record)
        return JobSnapshot(
            job_id=record.job.id,
            name=record.job.name,
            status=status,
            error_message=record.error_message if status == JobStatus.ERROR else None,
            progress=record.progress if status == JobStatus.SYNCING else None,
            recent_changes=list(record.recent_changes),
            enabled=record.job.enabled,
            paused=record.paused,
            muted=record.muted,
            last_sync_time=record.last_sync_time,
            last_exit_code=record.last_exit_code,
        )

    def _set_status(self, record: _JobRecord, status: JobStatus) -> None:
        if record.status == status:
            return
        previous, record.status = record.status, status
        if status != JobStatus.SYNCING:
            record.progress = None
        detail = f": {record.error_message}" if status == JobStatus.ERROR else ""
        logger.info(f"{get_status_emoji(status)} [{record.job.name}] {previous.value} -> {status.value}{detail}")

    def _release_lock_effect(self, job: Job) -> Effect:
        lock_path = job.lock_path(self.config.paths.lock_dir)
        return lambda: locks.release_lock(lock_path)

    def _run_effects(self, effects: list[Effect]) -> None:
        for effect in effects:
            try:
                effect()
            except Exception as e:
                logger.error(f"Error running side effect: {e}", exc_info=True)

    def _start_watchers(self, job_id: str) -> None:
        with self._lifecycle_lock:
            with self._lock:
                record = self._records.get(job_id)
                if record is None:
                    return
                job = record.job
                log_watcher = record.log_watcher
                log_cursor = record.log_cursor
                directory_watcher = record.directory_watcher

            watcher_config = self.config.watcher
            if log_watcher is None:
                log_watcher = self._log_watcher_factory(
                    job.log_path(self.config.paths.log_dir),
                    lambda lines: self.handle_lines(job_id, lines),
                    poll_interval=watcher_config.poll_interval_seconds,
                    replay_lines=watcher_config.replay_lines,
                    replay_max_bytes=watcher_config.replay_max_bytes,
                    cursor=log_cursor,
                    label=job.name,
                    on_replay=lambda lines: self.handle_lines(job_id, lines, replay=True),
                )
            if directory_watcher is None and job.local_path:
                directory_watcher = self._directory_watcher_factory(
                    job.local_path,
                    lambda: self.handle_settled(job_id),
                    debounce_seconds=watcher_config.debounce_seconds,
                    label=job.name,
                )

            with self._lock:
                record.log_watcher = log_watcher
                record.directory_watcher = directory_watcher

            log_watcher.start()
            if directory_watcher is not None:
                directory_watcher.start()

    def _stop_watchers(self, job_id: str) -> None:
        with self._lifecycle_lock:
            with self._lock:
                record = self._records.get(job_id)
                if record is None:
                    return
                log_watcher, record.log_watcher = record.log_watcher, None
                directory_watcher, record.directory_watcher = record.directory_watcher, None

            if log_watcher is not None:
                log_watcher.stop()
                with self._lock:
                    record.log_cursor = log_watcher.cursor
            if directory_watcher is not None:
                directory_watcher.stop()
