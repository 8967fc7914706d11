"""Typed failures raised by the lending workflow.

Every domain failure is a ``LendingError`` subclass carrying a stable ``code``
and the HTTP status the API answers with, so callers can branch on the type
and the web layer can translate it without a lookup table of its own.
"""

from typing import Any, Dict, Optional


class LendingError(Exception):
    code = "lending_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"detail": self.message, "error": self.code}
        payload.update(self.details)
        return payload


class NotFoundError(LendingError):
    code = "not_found"
    status_code = 404


class ConflictError(LendingError):
    """An active loan already exists for the same book and borrower."""

    code = "conflict"
    status_code = 409


class UnavailableError(LendingError):
    """No copies of the book are left on the shelf."""

    code = "unavailable"
    status_code = 400


class InvalidStateError(LendingError):
    code = "invalid_state"
    status_code = 400


class AlreadyPaidError(LendingError):
    code = "already_paid"
    status_code = 400


class ValidationError(LendingError):
    code = "validation_error"
    status_code = 400


class StorageUnavailableError(LendingError):
    """The database could not be reached or stayed locked past the timeout.

    Safe to retry once the caller has re-read the current state.
    """

    code = "storage_unavailable"
    status_code = 503
    retryable = True
