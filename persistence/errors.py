"""
Persistence Errors

Typed failures raised by the store and the encounter repository.
"""

from typing import Any, Dict, Optional


class PersistenceError(Exception):
    """Base class for all persistence failures"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            extra = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({extra})"
        return self.message


class NotFoundError(PersistenceError):
    """Referenced encounter or player does not exist"""


class ConflictError(PersistenceError):
    """An encounter with the same external id already exists"""


class StoreIOError(PersistenceError, OSError):
    """Filesystem or database access failure.

    Subclasses OSError, so ``except IOError`` catches it too.
    """


class ValidationError(PersistenceError, ValueError):
    """Malformed snapshot or argument (e.g. non-positive UID)"""
