"""
Error types and error logging utilities for omnilens.

Library code raises the exceptions below; the CLI turns them into clean
messages and logs full stack traces of anything unexpected for debugging.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class OmnilensError(Exception):
    """Base class for all omnilens errors."""


class NotFoundError(OmnilensError):
    """An update or reference named an id that does not exist."""


class ValidationError(OmnilensError):
    """Rejected input: empty collection name, protected default, etc."""


class InconsistencyError(OmnilensError):
    """Durable state disagrees with itself (e.g. scan/item status mismatch)."""


class DuplicateScanError(OmnilensError):
    """A queued scan already exists for the item."""


class CaptureFailedError(OmnilensError):
    """A capture could not be saved. Nothing was persisted."""


# -----------------------------------------------------------------------------
# Staging
# -----------------------------------------------------------------------------

class StagingError(OmnilensError):
    """Moving a raw asset into managed storage failed."""


class StagingPermissionError(StagingError):
    """Access to the source asset or managed storage was denied."""


class StagingIOError(StagingError):
    """The asset could not be read or written."""


# -----------------------------------------------------------------------------
# Analysis
# -----------------------------------------------------------------------------

class AnalysisError(OmnilensError):
    """
    The analysis service did not produce a result.

    ``retryable`` tells the orchestrator whether to queue the capture for a
    later attempt or give up on it.
    """
    retryable = True


class UnreachableError(AnalysisError):
    """Network failure or non-2xx response from the analysis service."""


class AnalysisTimeoutError(AnalysisError):
    """The analysis request exceeded its timeout."""


class BadResponseError(AnalysisError):
    """The service answered 2xx with a body that is not a JSON object."""


class AssetUnreadableError(AnalysisError):
    """The managed image could not be read; retrying will not help."""
    retryable = False


def _error_log_path(store_path=None) -> Path:
    """Resolve error log path, respecting OMNILENS_STORE_PATH."""
    if store_path is not None:
        return Path(store_path) / "omnilens-errors.log"
    store = os.environ.get("OMNILENS_STORE_PATH")
    if store:
        return Path(store) / "omnilens-errors.log"
    return Path.home() / ".omnilens" / "omnilens-errors.log"


def log_exception(exc: Exception, context: str = "", store_path=None) -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)
        store_path: Store directory; defaults to the environment's store

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path(store_path)
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
        pass  # Unwritable error log is not fatal
    return log_path
