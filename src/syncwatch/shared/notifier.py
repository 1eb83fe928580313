"""Notification module for SyncWatch.

Delivers batched file-change summaries and job errors via the log, email,
Teams and Slack. Delivery is best effort: failures are logged, never raised.
"""

import logging
import os
import smtplib
from datetime import datetime, timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol, Sequence

import httpx

from syncwatch.shared.config import NotificationConfig, get_config
from syncwatch.shared.schemas import FileChangeRecord

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def notify(self, job_name: str, changes: Sequence[FileChangeRecord]) -> None: ...

    def notify_error(self, job_name: str, message: str) -> None: ...


def summarize_changes(changes: Sequence[FileChangeRecord], threshold: int = 3) -> str:
    """One line per change for small batches, a count otherwise."""
    if len(changes) <= threshold:
        return "\n".join(f"{change.operation.value.capitalize()}: {change.file_name}" for change in changes)
    return f"{len(changes)} files synced"


class Notifier:
    """Handles sending notifications through multiple channels."""

    def __init__(self, config: Optional[NotificationConfig] = None):
        self.config = config or get_config().notifications
        self._last_error_time: dict[str, datetime] = {}

    def _in_cooldown(self, job_name: str) -> bool:
        """Check if error notifications for this job are still in cooldown."""
        cooldown_minutes = self.config.cooldown_minutes
        if cooldown_minutes <= 0:
            return False

        last = self._last_error_time.get(job_name)
        if last is None:
            return False

        cooldown_ends = last + timedelta(minutes=cooldown_minutes)
        if datetime.now() < cooldown_ends:
            remaining = (cooldown_ends - datetime.now()).seconds // 60
            logger.debug(f"NOTIFIER: '{job_name}' in cooldown, {remaining} minutes remaining")
            return True
        return False

    def notify(self, job_name: str, changes: Sequence[FileChangeRecord]) -> None:
        """Send one notification summarizing the files a sync run changed."""
        if not changes:
            return
        body = summarize_changes(changes, self.config.batch_summary_threshold)
        self.send(f"SyncWatch - {job_name}", body, level="INFO")

    def notify_error(self, job_name: str, message: str) -> None:
        """Send a job error, at most once per cooldown period per job."""
        if self._in_cooldown(job_name):
            logger.info(f"NOTIFIER: Error notification for '{job_name}' suppressed due to cooldown.")
            return
        if self.send(f"SyncWatch Error - {job_name}", f"Sync failed: {message}", level="ERROR"):
            self._last_error_time[job_name] = datetime.now()

    def send(self, subject: str, message: str, level: str = "INFO") -> bool:
        """Send via all enabled channels.

        Args:
            subject: Notification subject
            message: Plain text message
            level: Severity level (ERROR, WARNING, INFO)

        Returns:
            True if the notification was delivered (logging always counts).
        """
        if not self.config.enabled:
            logger.debug("NOTIFIER: Notifications disabled in config")
            return False

        log = logger.warning if level == "ERROR" else logger.info
        log(f"NOTIFIER: {subject}: {message}")

        channels = self.config.channels
        if channels.email.enabled:
            self._send_email(subject, message)
        if channels.teams.enabled:
            self._send_teams(subject, message, level)
        if channels.slack.enabled:
            self._send_slack(subject, message, level)
        return True

    def _send_email(self, subject: str, body: str) -> bool:
        cfg = self.config.channels.email
        password = os.environ.get(cfg.sender_password_env, "")
        if not password:
            logger.error(f"NOTIFIER: SMTP password not found in env var: {cfg.sender_password_env}")
            return False

        try:
            msg = MIMEMultipart()
            msg["From"] = cfg.sender_email
            msg["To"] = cfg.to_email
            msg["Subject"] = f"[SyncWatch] {subject}"
            msg.attach(MIMEText(body, "plain", "utf-8"))

            recipients = [e.strip() for e in cfg.to_email.split(",") if e.strip()]
            with smtplib.SMTP(cfg.smtp_server, cfg.smtp_port, timeout=10) as server:
                server.starttls()
                server.login(cfg.sender_email, password)
                server.sendmail(cfg.sender_email, recipients, msg.as_string())

            logger.info(f"NOTIFIER: Email sent to {cfg.to_email}")
            return True
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"NOTIFIER: Failed to send email: {e}")
            return False

    def _send_teams(self, subject: str, message: str, level: str) -> bool:
        """Send Teams webhook notification."""
        colors = {"ERROR": "FF0000", "WARNING": "FFA500", "INFO": "00FF00"}
        payload = {
            "@type": "MessageCard",
            "@context": "http://schema.org/extensions",
            "themeColor": colors.get(level, "808080"),
            "summary": subject,
            "sections": [{"activityTitle": subject, "text": message}],
        }
        return self._post_webhook("Teams", self.config.channels.teams.webhook_url, payload)

    def _send_slack(self, subject: str, message: str, level: str) -> bool:
        """Send Slack webhook notification."""
        icons = {"ERROR": ":rotating_light:", "WARNING": ":warning:", "INFO": ":white_check_mark:"}
        payload = {"text": f"{icons.get(level, ':bell:')} *{subject}*\n{message}"}
        return self._post_webhook("Slack", self.config.channels.slack.webhook_url, payload)

    def _post_webhook(self, channel: str, url: str, payload: dict) -> bool:
        try:
            response = httpx.post(url, json=payload, timeout=10)
        except httpx.HTTPError as e:
            logger.error(f"NOTIFIER: Failed to send {channel} webhook: {e}")
            return False

        if response.status_code == 200:
            logger.info(f"NOTIFIER: {channel} notification sent.")
            return True
        logger.error(f"NOTIFIER: {channel} failed with {response.status_code}: {response.text}")
        return False
