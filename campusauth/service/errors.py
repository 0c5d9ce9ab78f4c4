from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Every error carries a stable machine-readable ``error_code`` and a human
    message that is safe to show to the caller. HTTP statuses are assigned at
    the API boundary (see ``campusauth.api.error_handling``), never here.
    """

    error_code: str = "server_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationFailure(ServiceError):
    """Malformed input; the message is safe to report verbatim."""
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Missing, invalid, expired or revoked credentials."""
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"

    def __init__(self, message: str = "Token has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalidError(AuthenticationError):
    error_code = "token_invalid"

    def __init__(self, message: str = "Invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenRevokedError(AuthenticationError):
    error_code = "token_revoked"

    def __init__(self, message: str = "Token has been revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class CodeInvalidError(AuthenticationError):
    """A one-time code did not verify.

    Covers wrong, expired and never-issued codes alike.
    """

    error_code = "otp_invalid"

    def __init__(
        self,
        message: str = "Invalid or expired code",
        *,
        attempts_remaining: int = 0,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.attempts_remaining = attempts_remaining
        self.detail.setdefault("attempts_remaining", attempts_remaining)


class ForbiddenError(ServiceError):
    """Authenticated but not allowed, e.g. campus or role mismatch."""
    error_code = "forbidden"


class AccountLockedError(ForbiddenError):
    """Account is locked; remaining lock time is reported to the caller."""

    error_code = "account_locked"

    def __init__(
        self,
        locked_until: Optional[datetime],
        retry_after: int,
        *,
        message: Optional[str] = None,
    ) -> None:
        minutes = max(1, -(-retry_after // 60))
        super().__init__(
            message
            or f"Account is locked due to multiple failed login attempts. Try again in {minutes} minutes.",
            detail={
                "locked_until": locked_until.isoformat() if locked_until else None,
                "retry_after": retry_after,
            },
        )
        self.locked_until = locked_until
        self.retry_after = retry_after


class AccountInactiveError(ForbiddenError):
    error_code = "account_inactive"

    def __init__(
        self, message: str = "Account is inactive. Please contact administrator.", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found."""
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate email or phone."""
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Too many requests; ``retry_after`` is in seconds."""

    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(1, int(retry_after))
        self.detail.setdefault("retry_after", self.retry_after)


class DeliveryFailedError(ServiceError):
    """A code could not be delivered to the identity's email or phone."""
    error_code = "delivery_failed"
