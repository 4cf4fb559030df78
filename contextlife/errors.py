"""
Error types and error logging for contextlife.

Store failures surface as exceptions from mutating calls; the CLI logs the
full stack trace for debugging while showing a clean message to the user.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class ContextLifeError(Exception):
    """Base class for contextlife errors."""


class StoreError(ContextLifeError):
    """A persistence operation failed (disk full, corrupt database, ...).

    Raised by mutating RecordStore calls. The underlying sqlite3 error is
    chained as ``__cause__``. Mutations are additive or idempotent, so the
    caller may retry the identical call.
    """


class InvalidTransitionError(ContextLifeError, ValueError):
    """A segment state transition the state machine does not allow."""


class DuplicateDailyRecordError(ContextLifeError):
    """More than one daily record exists for the same calendar day.

    Never raised to callers: the store keeps the earliest-created record as
    canonical and reports this error through its diagnostics.
    """

    def __init__(self, day: str, record_ids: list[str]):
        self.day = day
        self.record_ids = record_ids
        super().__init__(
            f"{len(record_ids)} daily records for {day}; "
            f"using earliest ({record_ids[0]})"
        )


def _error_log_path() -> Path:
    """Resolve error log path, respecting CONTEXTLIFE_STORE_PATH."""
    store = os.environ.get("CONTEXTLIFE_STORE_PATH")
    if store:
        return Path(store) / "contextlife-errors.log"
    return Path.home() / ".contextlife" / "contextlife-errors.log"


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
            f.write("".join(traceback.format_exception(exc)))
    except OSError:
        pass  # Error log is best effort
    return log_path
