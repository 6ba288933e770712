"""
Shared error handling for the Storefront platform.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class StorefrontException(Exception):
    """Base exception for Storefront services."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class NotFoundError(StorefrontException):
    """A requested resource is missing or inactive."""

    status_code = 404

    def __init__(self, message: str = "Resource not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class ValidationError(StorefrontException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class InvalidReferenceError(StorefrontException):
    """A filter or selection entry points at a malformed identifier."""

    def __init__(self, message: str = "Invalid reference", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_REFERENCE", message, details)


class CacheUnavailableError(StorefrontException):
    """The cache backend could not be reached."""

    status_code = 503

    def __init__(self, message: str = "Cache unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_UNAVAILABLE", message, details)


class StatUpdateError(StorefrontException):
    """Execution statistics could not be recorded."""

    status_code = 500

    def __init__(self, message: str = "Stat update failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("STAT_UPDATE_FAILED", message, details)


class ExternalServiceError(StorefrontException):
    """External service errors."""

    status_code = 502

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)
