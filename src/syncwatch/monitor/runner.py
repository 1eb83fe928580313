"""Launch the external sync script for a job."""

import logging
import os
import subprocess
from pathlib import Path
from typing import Any, Callable, Protocol

from syncwatch.shared.schemas import Job

logger = logging.getLogger(__name__)

MountProbe = Callable[[str], bool]


class SyncRunner(Protocol):
    def run_sync(self, job: Job) -> Any:
        """Start a sync for the job and return immediately with an opaque handle."""
        ...


def path_exists(path: str) -> bool:
    """Default mount probe: the monitored path is mounted if it exists."""
    return os.path.exists(path)


class ScriptSyncRunner:
    """Run the shared sync script with the job's config file, detached."""

    def __init__(self, script_path: Path, config_dir: Path, shell: str = "/bin/bash") -> None:
        self.script_path = Path(script_path)
        self.config_dir = Path(config_dir)
        self.shell = shell

    def run_sync(self, job: Job) -> subprocess.Popen:
        """Start the script without waiting for it.

        Raises:
            FileNotFoundError: The script or the job's config file is missing.
            OSError: The process could not be started.
        """
        config_path = job.config_path(self.config_dir)
        if not self.script_path.exists():
            raise FileNotFoundError(f"Script not found: {self.script_path}")
        if not config_path.exists():
            raise FileNotFoundError(f"Config not found: {config_path}")

        process = subprocess.Popen(
            [self.shell, str(self.script_path), str(config_path)],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        logger.info(f"Started sync script for '{job.name}' (PID {process.pid})")
        return process
