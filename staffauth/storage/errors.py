from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for errors raised by the account/token/session stores."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""


class NotFound(StorageError):
    """The addressed token, session, account or role does not exist."""


class InvalidState(StorageError):
    """The record exists but its state forbids the requested transition."""


class ValidationFailure(StorageError):
    """Malformed input, e.g. a missing record or an unknown permission flag."""


class TransientStorageError(StorageError):
    """The backing database is unavailable; the caller may retry later."""


__all__ = [
    "StorageError",
    "ConstraintViolation",
    "NotFound",
    "InvalidState",
    "ValidationFailure",
    "TransientStorageError",
]
