"""Custom exceptions for the AlphaMail backend."""

import logging
from typing import Any

logger = logging.getLogger(__name__)

# Exception type → safe user-facing message mapping
_SAFE_MESSAGES: dict[str, str] = {
    "NotFoundError": "The requested resource was not found.",
    "AuthenticationError": "Authentication failed.",
    "AuthorizationError": "You do not have permission to perform this action.",
    "DatabaseError": "Something went wrong. Please try again.",
    "EmailSendError": "Something went wrong. Please try again.",
    "ExtractionError": "Something went wrong. Please try again.",
    "AIUnavailableError": "Something went wrong. Please try again.",
    "CircuitBreakerOpen": "A service dependency is temporarily unavailable. Please try again in a moment.",
    "ValueError": "The provided value is invalid.",
}

_DEFAULT_MESSAGE = "Internal server error"


def sanitize_error(e: Exception) -> str:
    """Map an exception to a safe, user-facing error message.

    Logs nothing and never includes the exception text, so provider errors,
    stack traces and SQL details cannot leak into an HTTP body or an email.

    Args:
        e: The exception to sanitize.

    Returns:
        A safe, generic error message string.
    """
    # Walk the MRO to find the most specific matching type
    for cls in type(e).__mro__:
        safe_msg = _SAFE_MESSAGES.get(cls.__name__)
        if safe_msg:
            return safe_msg

    return _DEFAULT_MESSAGE


class AlphaMailException(Exception):
    """Base exception for all AlphaMail-specific errors."""

    def __init__(
        self,
        message: str,
        code: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize AlphaMail exception.

        Args:
            message: Human-readable error message.
            code: Machine-readable error code.
            status_code: HTTP status code.
            details: Additional error details.
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class NotFoundError(AlphaMailException):
    """Resource not found error (404)."""

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        """Initialize not found error.

        Args:
            resource: Name of the resource that was not found.
            resource_id: Optional ID of the resource.
        """
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' not found"
        super().__init__(
            message=message,
            code="NOT_FOUND",
            status_code=404,
            details={"resource": resource, "resource_id": resource_id},
        )


class AuthenticationError(AlphaMailException):
    """Authentication failed error (401)."""

    def __init__(self, message: str = "Authentication required") -> None:
        """Initialize authentication error.

        Args:
            message: Error message.
        """
        super().__init__(
            message=message,
            code="AUTHENTICATION_ERROR",
            status_code=401,
        )


class AuthorizationError(AlphaMailException):
    """Authorization/permission denied error (403)."""

    def __init__(self, message: str = "Permission denied") -> None:
        """Initialize authorization error.

        Args:
            message: Error message.
        """
        super().__init__(
            message=message,
            code="AUTHORIZATION_ERROR",
            status_code=403,
        )


class DatabaseError(AlphaMailException):
    """Database operation error (500)."""

    def __init__(self, message: str = "A database error occurred") -> None:
        """Initialize database error.

        Args:
            message: Error message.
        """
        super().__init__(
            message=message,
            code="DATABASE_ERROR",
            status_code=500,
        )


class EmailSendError(AlphaMailException):
    """Outbound mail transport failure (500)."""

    def __init__(self, message: str = "Unknown error", to: str | None = None) -> None:
        """Initialize email send error.

        Args:
            message: Error details.
            to: Recipient address the send was attempted for.
        """
        super().__init__(
            message=f"Email send failed: {message}",
            code="EMAIL_SEND_ERROR",
            status_code=500,
            details={"to": to} if to else {},
        )


class ExtractionError(AlphaMailException):
    """Model output did not match the expected structure (502).

    Raised when the model returns text that is not a single JSON object of
    the declared shape. Retryable.
    """

    def __init__(self, operation: str, message: str = "Malformed model output") -> None:
        """Initialize extraction error.

        Args:
            operation: Name of the extraction that failed.
            message: Error details.
        """
        super().__init__(
            message=f"{operation}: {message}",
            code="EXTRACTION_ERROR",
            status_code=502,
            details={"operation": operation},
        )


class AIUnavailableError(AlphaMailException):
    """The model could not produce a usable result (503).

    Raised by the retry policy once attempts are exhausted, or immediately
    for terminal (authorization) provider failures. Callers substitute a
    fixed fallback message.
    """

    def __init__(
        self,
        operation: str,
        attempts: int,
        terminal: bool = False,
    ) -> None:
        """Initialize AI unavailable error.

        Args:
            operation: Name of the model operation that failed.
            attempts: Number of attempts made.
            terminal: True when the failure was not retryable.
        """
        reason = "terminal failure" if terminal else f"failed after {attempts} attempts"
        super().__init__(
            message=f"AI unavailable for {operation}: {reason}",
            code="AI_UNAVAILABLE",
            status_code=503,
            details={"operation": operation, "attempts": attempts, "terminal": terminal},
        )
        self.operation = operation
        self.attempts = attempts
        self.terminal = terminal
