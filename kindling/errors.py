"""
Exception types and error logging for kindling.

Domain operations raise the typed exceptions below. Validators never raise;
they return structured field errors (see validation.py), which become a
ValidationFailure when an operation cannot proceed.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class KindlingError(Exception):
    """Base class for all kindling errors."""


class ValidationFailure(KindlingError):
    """One or more field-level validation errors."""

    def __init__(self, errors: list, entity: str = "input"):
        self.errors = list(errors)
        self.entity = entity
        detail = "; ".join(f"{e.field}: {e.message}" for e in self.errors)
        super().__init__(f"Invalid {entity}: {detail}")


class NotFound(KindlingError):
    """A capsule, observation, summary or pin does not exist."""

    def __init__(self, entity: str, id: str):
        self.entity = entity
        self.id = id
        super().__init__(f"{entity.capitalize()} {id} not found")


class Conflict(KindlingError):
    """The requested transition conflicts with current state."""


class DuplicateOpenCapsule(Conflict):
    """A session already has an open capsule."""

    def __init__(self, session_id: str, existing_id: Optional[str]):
        self.session_id = session_id
        self.existing_id = existing_id
        super().__init__(
            f"Session {session_id} already has an open capsule ({existing_id})"
        )


class AlreadyClosed(Conflict):
    """The capsule has already been closed."""

    def __init__(self, capsule_id: str):
        self.capsule_id = capsule_id
        super().__init__(f"Capsule {capsule_id} is already closed")


class MalformedQuery(KindlingError):
    """Full-text query syntax the engine could not parse."""


class StorageFailure(KindlingError):
    """Engine-level failure that is not a query syntax error."""


class BundleInvalid(KindlingError):
    """Structural problems with an export bundle."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("Invalid bundle: " + "; ".join(self.errors))


def _error_log_path() -> Path:
    """Resolve error log path, respecting KINDLING_STORE_PATH."""
    store = os.environ.get("KINDLING_STORE_PATH")
    if store:
        return Path(store) / "kindling-errors.log"
    return Path.home() / ".kindling" / "kindling-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Append the current traceback to the error log.

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
            f.write(f"\n{'=' * 60}\n[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write(f" {type(exc).__name__}: {exc}\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # unwritable log must not mask the original error
    return log_path
