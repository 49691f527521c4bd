"""
Error types and error logging for pantry.

Lookups that find nothing return None/False rather than raising; the
exceptions below are for operations that cannot proceed.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class PantryError(Exception):
    """Base class for all pantry errors."""


class NotFoundError(PantryError, LookupError):
    """An id or id prefix that must resolve to an item resolved to nothing."""


class DimensionMismatchError(PantryError, ValueError):
    """Embedding length does not match the vector index dimension."""

    def __init__(self, stored: int, got: int):
        self.stored = stored
        self.got = got
        super().__init__(
            f"embedding dimension mismatch: index has {stored}, provider returned {got}. "
            "Run 'pantry reindex' to rebuild the vector index."
        )


class ProviderError(PantryError, RuntimeError):
    """The embedding provider failed (network, auth, bad response)."""


class ValidationError(PantryError, ValueError):
    """Input rejected before any persistence attempt."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"validation error: {field}: {message}")


class StoreError(PantryError):
    """The relational store failed."""


class ConflictError(StoreError):
    """An item with the same id already exists."""


class ConfigError(PantryError, ValueError):
    """Invalid configuration."""


def _error_log_path() -> Path:
    """Resolve error log path, respecting PANTRY_HOME."""
    home = os.environ.get("PANTRY_HOME")
    if home:
        return Path(home) / "pantry-errors.log"
    return Path.home() / ".pantry" / "pantry-errors.log"


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
        pass  # best effort: never crash while reporting a crash
    return log_path
