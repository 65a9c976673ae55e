"""
Error types and error logging for lifesync.

Storage-side failures (quota, corrupt records) are normally absorbed by the
blob store and surface only in logs. Remote failures abort a sync cycle and
are recorded in the sync metadata. The CLI logs full stack traces to a file
while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class LifesyncError(Exception):
    """Base exception for all lifesync errors."""


class QuotaExceededError(LifesyncError):
    """The substrate or blob quota cannot hold a write."""

    def __init__(self, key: str, needed: int, available: int):
        self.key = key
        self.needed = needed
        self.available = available
        super().__init__(
            f"Quota exceeded writing {key!r}: need {needed} bytes, {available} available"
        )


class CorruptRecordError(LifesyncError):
    """A stored record cannot be parsed back into its payload."""


class ConfigError(LifesyncError):
    """Invalid or unsupported configuration."""


class RemoteError(LifesyncError):
    """Error communicating with the remote repository."""


class RemoteUnavailableError(RemoteError):
    """Remote could not be reached (timeout, connection error, 5xx)."""


class RemoteRequestError(RemoteError):
    """Remote rejected the request (4xx other than rate limiting)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


def _error_log_path() -> Path:
    """Resolve error log path, respecting LIFESYNC_STORE_PATH."""
    store = os.environ.get("LIFESYNC_STORE_PATH")
    if store:
        return Path(store) / "lifesync-errors.log"
    return Path.home() / ".lifesync" / "lifesync-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write(f" {type(exc).__name__}: {exc}\n")
            f.write("".join(traceback.format_exception(exc)))
    except OSError:
        pass  # Can't write error log, don't crash over it
    return log_path
