"""
Error types and error logging utilities for voicejournal.

Logs full stack traces for debugging while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class JournalError(Exception):
    """Base class for voicejournal errors."""


class EntryNotFoundError(JournalError):
    """An operation referenced an entry that does not exist."""

    def __init__(self, entry_id: str):
        super().__init__(f"Entry {entry_id} not found.")
        self.entry_id = entry_id


class PreconditionError(JournalError):
    """A job cannot run because the entry is not in a usable state.

    Retrying will not help (e.g. summarizing an entry with no transcript).
    """


def _error_log_path() -> Path:
    """Resolve error log path, respecting VOICEJOURNAL_STORE_PATH."""
    store = os.environ.get("VOICEJOURNAL_STORE_PATH")
    if store:
        return Path(store) / "voicejournal-errors.log"
    return Path.home() / ".voicejournal" / "voicejournal-errors.log"


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
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log, don't crash over it
    return log_path
