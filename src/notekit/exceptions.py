"""Custom exceptions for notekit.

Provides a structured exception hierarchy with error codes and
machine-readable error information. Every failure a repository adapter
reports is one of these types, so callers never have to inspect raw
store or transport errors.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Note errors (1xxx)
    NOTE_NOT_FOUND = 1001
    INVALID_DATA = 1002

    # Storage errors (4xxx)
    FETCH_FAILED = 4001
    SAVE_FAILED = 4002
    DELETE_FAILED = 4003
    CONTEXT_UNAVAILABLE = 4004

    # Search errors (5xxx)
    SEARCH_FAILED = 5001

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001

    # Remote account errors (8xxx)
    ACCOUNT_UNAVAILABLE = 8001


class NotesError(Exception):
    """Base exception for all notekit errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INVALID_DATA,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class NoteNotFoundError(NotesError):
    """Raised when an update or delete targets a note the store does not hold."""

    def __init__(self, note_id: Any, message: Optional[str] = None):
        note_id = str(note_id)
        super().__init__(
            message or f"Note with ID '{note_id}' not found",
            code=ErrorCode.NOTE_NOT_FOUND,
            details={"note_id": note_id}
        )
        self.note_id = note_id


class InvalidDataError(NotesError):
    """Raised when input is rejected before it reaches a store."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]  # Truncate for safety

        super().__init__(message, code=ErrorCode.INVALID_DATA, details=details)
        self.field = field
        self.value = value


class StoreOperationError(NotesError):
    """Base for failures reported by a backing store.

    Attributes:
        operation: Repository operation that failed (e.g. "create", "search")
        backend: Name of the adapter that reported the failure
        cause: The originating store or transport error, kept for diagnostics
    """

    default_code = ErrorCode.FETCH_FAILED

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        backend: Optional[str] = None,
        cause: Optional[BaseException] = None,
        code: Optional[ErrorCode] = None,
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if backend:
            details["backend"] = backend
        if cause is not None:
            details["original_error"] = str(cause)[:200]

        super().__init__(message, code=code or self.default_code, details=details)
        self.operation = operation
        self.backend = backend
        self.cause = cause


class FetchFailedError(StoreOperationError):
    """Raised when the store rejects a read."""

    default_code = ErrorCode.FETCH_FAILED


class SaveFailedError(StoreOperationError):
    """Raised when the store rejects a create or update write."""

    default_code = ErrorCode.SAVE_FAILED


class DeleteFailedError(StoreOperationError):
    """Raised when the store rejects a delete."""

    default_code = ErrorCode.DELETE_FAILED


class SearchFailedError(StoreOperationError):
    """Raised when the store rejects a search query."""

    default_code = ErrorCode.SEARCH_FAILED


class ContextUnavailableError(NotesError):
    """Raised when an adapter's execution context is gone.

    Happens when an operation is scheduled on, or still pending in, an
    adapter (or local store) that has been closed or garbage collected.
    """

    def __init__(self, backend: str, operation: Optional[str] = None):
        details = {"backend": backend}
        if operation:
            details["operation"] = operation
        super().__init__(
            f"The {backend} store is no longer available",
            code=ErrorCode.CONTEXT_UNAVAILABLE,
            details=details
        )
        self.backend = backend
        self.operation = operation


class AccountUnavailableError(NotesError):
    """Raised when the remote account cannot be used for sync."""

    def __init__(self, status: Any):
        status_name = getattr(status, "value", str(status))
        super().__init__(
            f"Remote account is not available (status: {status_name})",
            code=ErrorCode.ACCOUNT_UNAVAILABLE,
            details={"status": status_name}
        )
        self.status = status


class ConfigurationError(NotesError):
    """Raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
    ):
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(message, code=ErrorCode.CONFIG_INVALID, details=details)
        self.config_key = config_key
