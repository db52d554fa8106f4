from __future__ import annotations


class FinanceError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(FinanceError, ValueError):
    """Malformed input or a category/transaction type mismatch."""

    status_code = 400


class NotFound(FinanceError, LookupError):
    """Unknown id, or an id owned by another user."""

    status_code = 404


class Conflict(FinanceError):
    """Uniqueness or referential-integrity violation."""

    status_code = 409


class StorageFailure(FinanceError, RuntimeError):
    """The atomic unit could not be committed and was rolled back."""

    status_code = 503
