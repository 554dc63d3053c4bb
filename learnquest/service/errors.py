from __future__ import annotations

from datetime import timedelta
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# Account lifecycle failures


class AlreadyExistsError(ConflictError):
    """An account with this email already exists and is verified."""
    error_code = "already_exists"

    def __init__(self, message: str = "User already exists and is verified.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class VerificationPendingError(AlreadyExistsError):
    """Duplicate signup for an unverified account; a fresh code was emailed."""
    error_code = "verification_pending"

    def __init__(
        self, message: str = "User already exists. Please verify your email.", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class ResendCooldownError(RateLimitedError):
    """A new verification code was requested too soon."""
    error_code = "resend_cooldown"

    def __init__(self, wait_minutes: int, **kwargs) -> None:
        self.wait_minutes = wait_minutes
        unit = "minute" if wait_minutes == 1 else "minutes"
        super().__init__(
            f"Please wait {wait_minutes} {unit} before requesting a new code.",
            detail={"wait_minutes": wait_minutes},
            **kwargs,
        )


class NotVerifiedError(ForbiddenError):
    error_code = "not_verified"

    def __init__(
        self,
        message: str = "Your account is not verified. A new code has been sent.",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredCodeError(ValidationError):
    error_code = "invalid_or_expired_code"

    def __init__(self, message: str = "Invalid or expired verification code.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class VerificationContextMissingError(ValidationError):
    """The verification cookie carrying the email is absent."""
    error_code = "verification_context_missing"

    def __init__(
        self, message: str = "Verification session expired. Please sign up again.", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class UserNotFoundError(NotFoundError):
    error_code = "user_not_found"

    def __init__(self, message: str = "User not found.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountDeletedError(ForbiddenError):
    error_code = "account_deleted"

    def __init__(self, message: str = "This account has been deleted.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotActivatedError(ForbiddenError):
    error_code = "not_activated"

    def __init__(self, message: str = "This account is not activated.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCredentialsError(AuthenticationError):
    """Uniform failure for unknown email or wrong password."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid login credentials.", **kwargs) -> None:
        super().__init__(message, **kwargs)


def format_remaining(remaining: timedelta) -> str:
    """Format a duration as mm:ss, rounding partial seconds up."""
    total = max(0, int(-(-remaining.total_seconds() // 1)))
    minutes, seconds = divmod(total, 60)
    return f"{minutes:02d}:{seconds:02d}"


class TooManyAttemptsError(RateLimitedError):
    """The identity is locked out; carries the remaining lockout time."""
    error_code = "too_many_attempts"

    def __init__(self, remaining: timedelta, message: Optional[str] = None, **kwargs) -> None:
        self.remaining = remaining
        super().__init__(
            message or f"Account locked. Try again after {format_remaining(remaining)}.",
            detail={"retry_after_seconds": int(remaining.total_seconds())},
            **kwargs,
        )


class InvalidOrExpiredTokenError(AuthenticationError):
    error_code = "invalid_or_expired_token"

    def __init__(self, message: str = "Invalid or expired token.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ProtectedAccountError(ForbiddenError):
    """System-protected accounts cannot be deactivated or deleted."""
    error_code = "protected_account"

    def __init__(self, message: str = "Cannot modify system-protected user.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class WeakPasswordError(ValidationError):
    error_code = "weak_password"

    def __init__(self, problems: list[str], **kwargs) -> None:
        self.problems = problems
        super().__init__(
            "Password does not meet strength requirements.",
            detail={"problems": problems},
            **kwargs,
        )


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "AlreadyExistsError",
    "VerificationPendingError",
    "ResendCooldownError",
    "NotVerifiedError",
    "InvalidOrExpiredCodeError",
    "VerificationContextMissingError",
    "UserNotFoundError",
    "AccountDeletedError",
    "NotActivatedError",
    "InvalidCredentialsError",
    "TooManyAttemptsError",
    "InvalidOrExpiredTokenError",
    "ProtectedAccountError",
    "WeakPasswordError",
    "format_remaining",
]
