from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``
    so the API layer can render the envelope without inspecting types:

    - invalid_credentials (401)
    - account_locked (423)
    - token_invalid (401)
    - token_reused (401)
    - email_not_verified (403)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - validation_error (400)
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


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are deliberately indistinguishable."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(AuthenticationError):
    """Login refused while a lockout is in force (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, locked_until: datetime, now: datetime) -> None:
        self.locked_until = locked_until
        self.retry_after_seconds = max(1, int((locked_until - now).total_seconds() + 0.999))
        super().__init__(
            "account temporarily locked",
            detail={
                "retry_after_seconds": self.retry_after_seconds,
                "locked_until": locked_until.isoformat(),
            },
        )


class InvalidTokenError(AuthenticationError):
    """Token is malformed, expired, foreign, consumed or of the wrong purpose."""
    error_code = "token_invalid"

    def __init__(self, message: str = "invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenReusedError(AuthenticationError):
    """A superseded refresh token was presented again."""
    error_code = "token_reused"

    def __init__(self, message: str = "refresh token already used", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class EmailNotVerifiedError(ForbiddenError):
    error_code = "email_not_verified"


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


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "InvalidTokenError",
    "TokenReusedError",
    "ForbiddenError",
    "EmailNotVerifiedError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
]
