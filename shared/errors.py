"""
Shared error handling for the rules persistence services.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: str
    message: str
    details: Dict[str, Any] = {}


class AccessLayerException(Exception):
    """Base exception for rules persistence services."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(AccessLayerException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class StorageError(AccessLayerException):
    """Base class for failures raised by a backing store."""

    def __init__(self, code: str, store: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.store = store
        super().__init__(code, f"{store}: {message}", details)


class StorageUnavailable(StorageError):
    """The store could not be reached."""

    def __init__(self, store: str, message: str = "Store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORAGE_UNAVAILABLE", store, message, details)


ConnectionFailure = StorageUnavailable


class StorageTimeout(StorageError):
    """The store did not answer in time."""

    def __init__(self, store: str, message: str = "Store timed out", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORAGE_TIMEOUT", store, message, details)


class WriteFailure(StorageError):
    """An insert or delete was rejected by the store."""

    def __init__(self, store: str, message: str = "Write rejected", details: Optional[Dict[str, Any]] = None):
        super().__init__("WRITE_FAILURE", store, message, details)


class QueryFailure(StorageError):
    """A read was rejected by the store."""

    def __init__(self, store: str, message: str = "Query rejected", details: Optional[Dict[str, Any]] = None):
        super().__init__("QUERY_FAILURE", store, message, details)


class PartialWriteError(AccessLayerException):
    """
    Raised when a dual-store publish stopped part way.

    ``result`` records which writes completed before the failure; the
    underlying storage error is available as ``__cause__``.
    """

    def __init__(self, result: Any, message: str = "Publish incomplete", details: Optional[Dict[str, Any]] = None):
        self.result = result
        super().__init__("PARTIAL_WRITE", message, details)
