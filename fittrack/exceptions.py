"""
Application error taxonomy.

Every error carries the HTTP status it maps to; the handlers in ``main``
decide between an HTML page and a JSON body.
"""

from typing import Any, Dict, List, Optional


class FitTrackError(Exception):
    """Base exception for all application errors"""

    status_code = 500
    default_message = "An error occurred"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        """
        Args:
            message: Human-readable error message, safe to show to the user
            details: Optional additional context for server-side logs
        """
        self.message = message or self.default_message
        super().__init__(self.message)
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ValidationError(FitTrackError):
    """Malformed or out-of-range input"""

    status_code = 400
    default_message = "Invalid input"

    def __init__(
        self,
        message: Optional[str] = None,
        errors: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.errors = errors or []
        if message is None and self.errors:
            message = "; ".join(self.errors)
        super().__init__(message, details)


class AuthenticationError(FitTrackError):
    """Missing or invalid credentials, or an expired session"""

    status_code = 401
    default_message = "Authentication required"


class AuthorizationError(FitTrackError):
    """Authenticated, but not the owner of the resource and not an admin"""

    status_code = 403
    default_message = "You are not allowed to perform this action"


class CsrfError(FitTrackError):
    """CSRF token missing or not matching the session token"""

    status_code = 403
    default_message = "Invalid CSRF token"


class NotFoundError(FitTrackError):
    """Resource absent, or filtered out by the access rules"""

    status_code = 404
    default_message = "Resource not found"


class RateLimitError(FitTrackError):
    """Too many failed attempts"""

    status_code = 429
    default_message = "Too many failed attempts. Please try again later."

    def __init__(self, message: Optional[str] = None, retry_after: int = 0):
        super().__init__(message, {"retry_after": retry_after})
        self.retry_after = retry_after


class ServerError(FitTrackError):
    """Unexpected failure; the message shown to users is generic"""

    status_code = 500
    default_message = "An internal error occurred. Please try again later."
