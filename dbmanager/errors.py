"""
Error types and error logging for dbmanager.

Every failure raised by the manager derives from DBManagerError, so callers
can catch the whole family at once. Store exceptions are wrapped in
StoreError with the original exception chained as ``__cause__``.

The CLI logs full stack traces to a file while showing clean messages.
"""

import os
import traceback
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator


class DBManagerError(Exception):
    """Base class for all dbmanager errors."""


class ConfigurationError(DBManagerError):
    """The manager is not usable as configured (e.g. init() was never called)."""


class InvalidIdentifier(DBManagerError, ValueError):
    """A string identifier could not be cast to the store's native type."""

    def __init__(self, value: Any):
        super().__init__(f"invalid id '{value}'")
        self.value = value


class NotFound(DBManagerError):
    """An update targeted a document that does not exist."""

    def __init__(self, message: str = "no item found"):
        super().__init__(message)


class StoreError(DBManagerError):
    """A failure surfaced by the underlying document store."""

    def __init__(self, operation: str, cause: BaseException):
        super().__init__(f"{operation} failed: {cause}")
        self.operation = operation
        self.cause = cause


class ValidationFailure(DBManagerError):
    """The configured validate hook rejected a document."""


class UnsupportedFilter(DBManagerError, ValueError):
    """A filter cannot be turned into a document (auto-insert needs plain equality predicates)."""


class HookFailure(DBManagerError):
    """The pre-delete hook failed (the deletion itself already committed)."""


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    """Wrap anything the store raises inside the block in StoreError."""
    try:
        yield
    except DBManagerError:
        raise
    except Exception as e:
        raise StoreError(operation, e) from e


def _error_log_path() -> Path:
    """Resolve error log path, respecting DBMANAGER_STORE_PATH."""
    store = os.environ.get("DBMANAGER_STORE_PATH")
    if store:
        return Path(store) / "dbmanager-errors.log"
    return Path.home() / ".dbmanager" / "dbmanager-errors.log"


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
        pass  # best effort, never mask the original error
    return log_path
