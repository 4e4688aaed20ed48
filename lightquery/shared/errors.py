"""
Shared error handling for lightquery.
"""

from typing import Any, Dict, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error payload for presentation layers."""

    code: str
    message: str
    details: Dict[str, Any] = {}


class LightQueryException(Exception):
    """Base exception for lightquery."""

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


class ValidationError(LightQueryException):
    """Invalid option values."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class KeySerializationError(LightQueryException):
    """A query key could not be canonicalized."""

    def __init__(self, message: str = "Query key is not serializable", details: Optional[Dict[str, Any]] = None):
        super().__init__("KEY_SERIALIZATION_ERROR", message, details)


class QueryError(LightQueryException):
    """Query-related errors, carrying the key and the underlying failure."""

    def __init__(
        self,
        message: str,
        query_key: Any = None,
        original_error: Optional[BaseException] = None,
        code: str = "QUERY_ERROR",
    ):
        self.query_key = query_key
        self.original_error = original_error
        details: Dict[str, Any] = {"query_key": query_key}
        if original_error is not None:
            details["original_error"] = str(original_error)
        super().__init__(code, message, details)


class QueryDataError(QueryError):
    """A fetch settled without usable data."""

    def __init__(self, query_key: Any = None, original_error: Optional[BaseException] = None):
        super().__init__(
            "Query data is None",
            query_key=query_key,
            original_error=original_error,
            code="QUERY_DATA_MISSING",
        )


class QuerySuspendedError(QueryError):
    """Suspense is enabled and the query is still loading."""

    def __init__(self, query_key: Any = None):
        super().__init__("Query is still loading", query_key=query_key, code="QUERY_SUSPENDED")


class QueryCancelledError(QueryError):
    """The fetch was cancelled or superseded before the operation ran."""

    def __init__(self, query_key: Any = None):
        super().__init__("Query was cancelled", query_key=query_key, code="QUERY_CANCELLED")
