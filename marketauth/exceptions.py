"""
Custom Exception Classes for marketauth

This module defines the exception hierarchy raised by the two-factor
state machine and its collaborators. Every exception carries an HTTP
status code and a machine-readable error code so the exception handlers
can render a consistent error envelope.
"""

from enum import Enum
from typing import Any

from fastapi import status


class ErrorCode(str, Enum):
    """Machine-readable error codes returned in error responses."""

    # Generic
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    # Authentication
    AUTH_FAILED = "AUTH_FAILED"
    AUTH_PERMISSION_DENIED = "AUTH_PERMISSION_DENIED"

    # Resources
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    RESOURCE_CREDENTIALS_NOT_FOUND = "RESOURCE_CREDENTIALS_NOT_FOUND"

    # Two-factor
    TWO_FACTOR_NOT_SET_UP = "TWO_FACTOR_NOT_SET_UP"
    TWO_FACTOR_INVALID_CODE = "TWO_FACTOR_INVALID_CODE"
    TWO_FACTOR_CODE_EXPIRED = "TWO_FACTOR_CODE_EXPIRED"
    TWO_FACTOR_ALREADY_ENABLED = "TWO_FACTOR_ALREADY_ENABLED"
    TWO_FACTOR_ALREADY_DISABLED = "TWO_FACTOR_ALREADY_DISABLED"
    TWO_FACTOR_TOO_MANY_ATTEMPTS = "TWO_FACTOR_TOO_MANY_ATTEMPTS"
    SMS_DELIVERY_FAILED = "SMS_DELIVERY_FAILED"


class MarketAuthError(Exception):
    """Base exception class for all marketauth exceptions"""

    error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        if error_code is not None:
            self.error_code = error_code
        super().__init__(self.message)


# ============================================================================
# Authentication Exceptions
# ============================================================================


class AuthenticationError(MarketAuthError):
    """Raised when the bearer token cannot be authenticated"""

    error_code = ErrorCode.AUTH_FAILED

    def __init__(self, message: str = "Could not validate credentials", details: dict[str, Any] | None = None):
        super().__init__(message=message, status_code=status.HTTP_401_UNAUTHORIZED, details=details)


# ============================================================================
# Resource Not Found Exceptions
# ============================================================================


class ResourceNotFoundError(MarketAuthError):
    """Base class for resource not found errors"""

    error_code = ErrorCode.RESOURCE_NOT_FOUND

    def __init__(self, resource_type: str, resource_id: Any | None = None):
        message = f"{resource_type} not found"
        if resource_id is not None:
            message = f"{resource_type} with id '{resource_id}' not found"
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": resource_id},
        )


class CredentialsNotFoundError(ResourceNotFoundError):
    """Raised when a user has no security record yet"""

    error_code = ErrorCode.RESOURCE_CREDENTIALS_NOT_FOUND

    def __init__(self, user_id: Any | None = None):
        super().__init__(resource_type="UserSecurity", resource_id=user_id)


# ============================================================================
# Two-Factor Exceptions
# ============================================================================


class TwoFactorError(MarketAuthError):
    """Base class for failures of the two-factor state machine"""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message=message, status_code=status_code, details=details)


class NotSetUpError(TwoFactorError):
    """Raised when an operation needs a setup step that never happened"""

    error_code = ErrorCode.TWO_FACTOR_NOT_SET_UP

    def __init__(self, message: str = "2FA not set up", details: dict[str, Any] | None = None):
        super().__init__(message=message, details=details)


class NoChallengeError(NotSetUpError):
    """Raised when an SMS code is submitted but none was issued"""

    def __init__(self, message: str = "No SMS code has been requested"):
        super().__init__(message=message)


class InvalidCodeError(TwoFactorError):
    """Raised when a TOTP, backup or SMS code does not match"""

    error_code = ErrorCode.TWO_FACTOR_INVALID_CODE

    def __init__(self, message: str = "Invalid 2FA code"):
        super().__init__(message=message)


class ChallengeExpiredError(TwoFactorError):
    """Raised when an SMS code is submitted after its validity window"""

    error_code = ErrorCode.TWO_FACTOR_CODE_EXPIRED

    def __init__(self, message: str = "OTP expired"):
        super().__init__(message=message)


class AlreadyEnabledError(TwoFactorError):
    """Raised when a setup step is attempted while 2FA is enabled"""

    error_code = ErrorCode.TWO_FACTOR_ALREADY_ENABLED

    def __init__(self, message: str = "2FA is already enabled. Disable it first to reconfigure."):
        super().__init__(message=message, status_code=status.HTTP_409_CONFLICT)


class AlreadyDisabledError(TwoFactorError):
    """Raised when disabling 2FA that is not enabled"""

    error_code = ErrorCode.TWO_FACTOR_ALREADY_DISABLED

    def __init__(self, message: str = "2FA is not enabled."):
        super().__init__(message=message, status_code=status.HTTP_409_CONFLICT)


class SmsDeliveryError(TwoFactorError):
    """Raised when the SMS gateway fails to deliver a message"""

    error_code = ErrorCode.SMS_DELIVERY_FAILED

    def __init__(self, message: str = "Failed to send OTP", provider: str | None = None):
        details = {"provider": provider} if provider else {}
        super().__init__(message=message, status_code=status.HTTP_502_BAD_GATEWAY, details=details)


class TooManyAttemptsError(TwoFactorError):
    """Raised when a user exceeds the allowed number of failed verifications"""

    error_code = ErrorCode.TWO_FACTOR_TOO_MANY_ATTEMPTS

    def __init__(self, retry_after: float):
        self.retry_after = retry_after
        super().__init__(
            message=f"Too many 2FA attempts. Try again in {int(retry_after) + 1} seconds.",
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            details={"retry_after": round(retry_after, 1)},
        )
