"""
Shared error handling for the Songbook API Gateway.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class GatewayException(Exception):
    """Base exception for gateway services."""

    status_code: int = 400

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


class AuthenticationError(GatewayException):
    """Authentication-related errors."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class AuthorizationError(GatewayException):
    """Authorization-related errors."""

    status_code = 403

    def __init__(self, message: str = "Authorization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class ConfigurationError(GatewayException):
    """Invalid service configuration, raised at startup."""

    status_code = 500

    def __init__(self, message: str = "Invalid configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class ExternalServiceError(GatewayException):
    """External service errors."""

    status_code = 502

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)


class StoreUnavailableError(GatewayException):
    """The shared counter store could not be reached."""

    status_code = 503

    def __init__(self, operation: str, message: str = "Counter store unavailable",
                 details: Optional[Dict[str, Any]] = None):
        self.operation = operation
        super().__init__("STORE_UNAVAILABLE", f"{operation}: {message}", details)


class RateLimitError(GatewayException):
    """Rate limiting errors.

    Carries the values surfaced in the rate limit headers so the exception
    handler can shape the 429 response without another store round trip.
    """

    status_code = 429

    def __init__(
        self,
        message: str = "Too many requests, please try again later.",
        *,
        limit: int,
        remaining: int = 0,
        reset: int,
        retry_after: int,
        blocked: bool = False,
    ):
        self.limit = limit
        self.remaining = remaining
        self.reset = reset
        self.retry_after = retry_after
        self.blocked = blocked
        super().__init__("RATE_LIMIT_ERROR", message, {"retry_after": retry_after})

    def to_body(self) -> Dict[str, Any]:
        """Client-facing 429 body."""
        return {
            "statusCode": self.status_code,
            "message": self.message,
            "retryAfter": self.retry_after,
        }

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset),
            "Retry-After": str(self.retry_after),
        }
