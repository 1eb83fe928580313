"""Centralized log markers for rclone bisync and the sync script.

Both the line parser and the coordinator's error classifier read from
MARKERS, so a phrase is categorized the same way everywhere.
"""

import re
from enum import Enum
from typing import Optional

# All markers are matched as case-insensitive substrings.
MARKERS: dict[str, tuple[str, ...]] = {
    "sync_started": ("starting bisync", "starting sync"),
    "sync_completed": ("bisync successful", "completed successfully", "sync complete"),
    "sync_failed": ("bisync failed", "failed with exit code", "failed to bisync"),
    "drive_not_mounted": ("drive not mounted", "not mounted"),
    "already_running": ("already running",),
    # Expected right after a full --resync, resolves itself on the next run
    "transient": ("all files were changed", "safety abort"),
    # Abort markers that carry no actionable detail on their own
    "generic": ("bisync aborted", "failed to bisync"),
    "actionable": (
        "out of sync",
        "resync",
        "lock file",
        "check file",
        "access test failed",
        "failed to initialise",
        "failed to initialize",
        "malformed rule",
    ),
}

CRITICAL_MARKER = "CRITICAL:"

# Prefixes that add nothing for the user, removed before display
NOISE_PREFIXES = ("Bisync critical error: ", "CRITICAL: ", "ERROR : ")

MAX_ERROR_LENGTH = 300

_EXIT_CODE_RE = re.compile(r"exit code (\d+)", re.IGNORECASE)
_ANSI_RE = re.compile(r"(?:\x1b|\\u001b)\[[0-9;]*[A-Za-z]")
_BARE_COLOR_RE = re.compile(r"\[\d+(?:;\d+)*m")


class ErrorClass(str, Enum):
    """How an error message should be treated before showing it to the user."""

    TRANSIENT = "transient"
    GENERIC = "generic"
    ACTIONABLE = "actionable"
    OTHER = "other"


def matches(category: str, text: str) -> bool:
    """Check whether text contains any marker of the given category."""
    lowered = text.lower()
    return any(marker in lowered for marker in MARKERS[category])


def extract_exit_code(text: str) -> Optional[int]:
    match = _EXIT_CODE_RE.search(text)
    if match:
        return int(match.group(1))
    return None


def strip_ansi(text: str) -> str:
    """Remove terminal color escape sequences, including their escaped renderings."""
    text = _ANSI_RE.sub("", text)
    return _BARE_COLOR_RE.sub("", text)


def clean_error_message(message: str, limit: int = MAX_ERROR_LENGTH) -> str:
    """Strip color codes and noise prefixes and truncate to a displayable length."""
    cleaned = strip_ansi(message).strip()
    for prefix in NOISE_PREFIXES:
        index = cleaned.find(prefix)
        if index != -1:
            cleaned = cleaned[index + len(prefix):].strip()
    if len(cleaned) > limit:
        cleaned = cleaned[:limit] + "..."
    return cleaned


def classify_error(message: str) -> ErrorClass:
    """Classify an error message.

    Args:
        message: Raw or cleaned error text.

    Returns:
        TRANSIENT for post-resync noise, ACTIONABLE for errors the user can fix,
        GENERIC for bare abort markers, OTHER for everything else.
    """
    if matches("transient", message):
        return ErrorClass.TRANSIENT
    if matches("actionable", message):
        return ErrorClass.ACTIONABLE
    if matches("generic", message):
        return ErrorClass.GENERIC
    return ErrorClass.OTHER
