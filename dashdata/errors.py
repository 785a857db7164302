"""Error taxonomy shared by every layer of dashdata.

Backend adapters normalize driver-specific failures into ``DatabaseError``
before they leave the adapter boundary. The facade and the async state
container only ever see these types.
"""

from enum import Enum

import typing as t


class DatabaseErrorType(str, Enum):
    """Normalized database error categories."""

    CONNECTION_ERROR = "connection_error"
    AUTHENTICATION_ERROR = "auth_error"
    PERMISSION_ERROR = "permission_error"
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMIT = "rate_limit"
    UNKNOWN_ERROR = "unknown_error"


TRANSIENT_ERROR_TYPES: frozenset[DatabaseErrorType] = frozenset(
    {
        DatabaseErrorType.CONNECTION_ERROR,
        DatabaseErrorType.RATE_LIMIT,
    },
)


class DatabaseError(Exception):
    """A backend failure normalized into the dashdata taxonomy."""

    def __init__(
        self,
        message: str,
        error_type: DatabaseErrorType = DatabaseErrorType.UNKNOWN_ERROR,
        original_error: t.Any = None,
        *,
        table: str | None = None,
        operation: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.type = DatabaseErrorType(error_type)
        self.original_error = original_error
        self.table = table
        self.operation = operation

    @property
    def is_transient(self) -> bool:
        """Whether retrying the same call may succeed."""
        return self.type in TRANSIENT_ERROR_TYPES

    def __repr__(self) -> str:
        return f"DatabaseError(type={self.type.value!r}, message={self.message!r})"


class ConfigurationError(Exception):
    """Raised when a builder or component is used with incomplete configuration."""

    def __init__(self, message: str, field_name: str | None = None) -> None:
        super().__init__(message)
        self.field_name = field_name


def is_transient(error: BaseException) -> bool:
    """Return True for errors that a retry policy is allowed to retry."""
    return isinstance(error, DatabaseError) and error.is_transient


def error_message(error: BaseException) -> str:
    """Human readable message for an exception, never empty."""
    if isinstance(error, DatabaseError):
        return error.message or error.type.value
    return str(error) or error.__class__.__name__
