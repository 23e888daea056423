"""
Shared error handling for the entitlement sync client.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error report format."""

    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class SyncLayerException(Exception):
    """Base exception for the entitlement sync subsystem."""

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


class AuthenticationError(SyncLayerException):
    """No valid identity is available for the operation."""

    def __init__(self, message: str = "unauthenticated", details: Optional[Dict[str, Any]] = None):
        super().__init__("UNAUTHENTICATED", message, details)


class RequestFailedError(SyncLayerException):
    """An HTTP request completed with an error status or an unusable body."""

    def __init__(self, status_code: Optional[int], message: str = "Request failed",
                 retry_after: Optional[float] = None, details: Optional[Dict[str, Any]] = None):
        self.status_code = status_code
        self.retry_after = retry_after
        merged = {"status_code": status_code, **(details or {})}
        super().__init__("REQUEST_FAILED", message, merged)

    @property
    def retryable(self) -> bool:
        """Only 5xx and 429 responses are worth repeating."""
        if self.status_code is None:
            return False
        return self.status_code >= 500 or self.status_code == 429


class RequestCancelledError(SyncLayerException):
    """The in-flight request was aborted before it completed."""

    def __init__(self, message: str = "Request aborted", details: Optional[Dict[str, Any]] = None):
        super().__init__("REQUEST_CANCELLED", message, details)


class RedemptionError(SyncLayerException):
    """The backend rejected a redeem code."""

    def __init__(self, message: str = "Redemption failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("REDEMPTION_FAILED", message, details)


class ChannelError(SyncLayerException):
    """Realtime channel errors."""

    def __init__(self, message: str = "Realtime channel error", details: Optional[Dict[str, Any]] = None):
        super().__init__("CHANNEL_ERROR", message, details)
