"""Configuration loader for SyncWatch."""

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from syncwatch.shared.schemas import Job

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "SYNCWATCH_CONFIG"


def _expand(value: Any) -> Any:
    if isinstance(value, str):
        return Path(os.path.expandvars(os.path.expanduser(value)))
    return value


class PathsConfig(BaseModel):
    """Where the sync script keeps its logs, locks and per-job configs."""

    model_config = ConfigDict(validate_default=True)

    log_dir: Path = Path("~/.local/log")
    lock_dir: Path = Path("/tmp")
    config_dir: Path = Path("~/.config/synctray/profiles")
    script_path: Path = Path("~/.local/bin/synctray-sync.sh")

    @field_validator("log_dir", "lock_dir", "config_dir", "script_path", mode="before")
    @classmethod
    def expand_user(cls, value: Any) -> Any:
        if isinstance(value, Path):
            value = str(value)
        return _expand(value)


class WatcherConfig(BaseModel):
    """Log tailing and directory activity settings."""

    poll_interval_seconds: float = 2.5
    debounce_seconds: float = 15.0
    # Lines replayed from the end of an existing log on startup to rebuild state
    replay_lines: int = 50
    replay_max_bytes: int = 64 * 1024
    mount_check_interval_seconds: float = 5.0


class SyncConfig(BaseModel):
    """Trigger policy settings."""

    # A lock older than this is considered left behind by a crashed run
    lock_stale_seconds: int = 7200
    recent_changes_limit: int = 20
    trigger_on_activity: bool = True


class EmailConfig(BaseModel):
    enabled: bool = False
    smtp_server: str = ""
    smtp_port: int = 587
    sender_email: str = ""
    sender_password_env: str = "SYNCWATCH_SMTP_PASSWORD"  # Environment variable name for password
    to_email: str = ""


class TeamsConfig(BaseModel):
    enabled: bool = False
    webhook_url: str = ""


class SlackConfig(BaseModel):
    enabled: bool = False
    webhook_url: str = ""


class NotificationChannels(BaseModel):
    email: EmailConfig = EmailConfig()
    teams: TeamsConfig = TeamsConfig()
    slack: SlackConfig = SlackConfig()


class NotificationConfig(BaseModel):
    enabled: bool = True
    # Minimum minutes between two error notifications for the same job
    cooldown_minutes: int = 60
    # Up to this many changes are listed by name, above it only the count
    batch_summary_threshold: int = 3
    channels: NotificationChannels = NotificationChannels()


class MonitorConfig(BaseModel):
    """Monitor process settings."""

    status_file: str = "./status.json"
    log_file: Optional[str] = "syncwatch.log"
    log_level: str = "INFO"


class DashboardConfig(BaseModel):
    """Dashboard settings."""

    host: str = "127.0.0.1"
    port: int = 2048


class AppConfig(BaseModel):
    """Root application configuration."""

    jobs: list[Job] = Field(default_factory=list)
    paths: PathsConfig = PathsConfig()
    watcher: WatcherConfig = WatcherConfig()
    sync: SyncConfig = SyncConfig()
    notifications: NotificationConfig = NotificationConfig()
    monitor: MonitorConfig = MonitorConfig()
    dashboard: DashboardConfig = DashboardConfig()

    @property
    def enabled_jobs(self) -> list[Job]:
        return [job for job in self.jobs if job.enabled]


def default_config_path() -> Path:
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)
    return Path.cwd() / "config.yaml"


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Load configuration from YAML file.

    Args:
        config_path: Path to config.yaml. Defaults to $SYNCWATCH_CONFIG or ./config.yaml.

    Returns:
        Parsed AppConfig object.
    """
    if config_path is None:
        config_path = default_config_path()

    with open(config_path, encoding="utf-8") as f:
        data: Optional[dict[str, Any]] = yaml.safe_load(f)

    config = AppConfig(**(data or {}))
    logger.debug(f"Loaded {len(config.jobs)} job(s) from {config_path}")
    return config


# Singleton config instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get or load the application configuration."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Replace the cached configuration (None forces a reload on next access)."""
    global _config
    _config = config
