"""
Shared error handling for the invoice dispatch service.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: str
    message: str
    details: Dict[str, Any] = {}


class DispatchException(Exception):
    """Base exception for dispatch components."""

    retryable = False

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


class TransientInfraError(DispatchException):
    """Network or timeout failure talking to infrastructure."""

    retryable = True

    def __init__(self, message: str = "Transient infrastructure error", details: Optional[Dict[str, Any]] = None):
        super().__init__("TRANSIENT_INFRA", message, details)


class CredentialError(DispatchException):
    """Base class for credential lease failures."""


class AuthenticationRejected(CredentialError):
    """Identity endpoint refused the credential exchange."""

    def __init__(self, message: str = "Authentication rejected", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_REJECTED", message, details)


class InvalidCredentialResponse(CredentialError):
    """Identity endpoint answered without the required fields."""

    def __init__(self, message: str = "Invalid credential response", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_CREDENTIAL_RESPONSE", message, details)


class CredentialFetchTimeout(CredentialError):
    """Credential exchange timed out or failed at the transport level."""

    retryable = True

    def __init__(self, message: str = "Credential fetch timed out", details: Optional[Dict[str, Any]] = None):
        super().__init__("CREDENTIAL_FETCH_TIMEOUT", message, details)


class ChannelUnavailable(DispatchException):
    """Publishing to or acknowledging on the message channel failed."""

    retryable = True

    def __init__(self, message: str = "Message channel unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("CHANNEL_UNAVAILABLE", message, details)


class ValidationError(DispatchException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class RateLimitError(DispatchException):
    """Call budget exhausted and the wait for a permit timed out."""

    retryable = True

    def __init__(self, message: str = "Rate limit exceeded", details: Optional[Dict[str, Any]] = None):
        super().__init__("RATE_LIMIT_ERROR", message, details)
