from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass carries an HTTP ``status_code`` and a stable ``error_code``
    from the error taxonomy:
    - VALIDATION_ERROR (400)
    - AUTHENTICATION_ERROR (401)
    - AUTHORIZATION_ERROR (403)
    - FORBIDDEN (403)
    - NOT_FOUND (404)
    - CONFLICT (409)
    - ACCOUNT_LOCKED (423)
    - RATE_LIMIT_ERROR (429)
    - SERVER_ERROR (500)
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

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

    @property
    def headers(self) -> dict[str, str]:
        return {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class TokenInvalidError(ValidationError):
    """Security token is unknown or already used (400)."""

    def __init__(self, message: str = "Invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(ValidationError):
    """Security token exists but is past its expiry (400)."""

    def __init__(self, message: str = "Invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "AUTHENTICATION_ERROR"


class AuthorizationError(ServiceError):
    """Caller lacks the role or scope for the operation (403)."""
    status_code = 403
    error_code = "AUTHORIZATION_ERROR"


class EmailNotVerifiedError(AuthorizationError):
    def __init__(
        self, message: str = "Please verify your email before logging in", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Operation blocked by a structural rule (403)."""
    status_code = 403
    error_code = "FORBIDDEN"


class ImpersonationBlockedError(ForbiddenError):
    """Sensitive operation attempted while impersonating another user."""

    def __init__(
        self,
        message: str = "This action is not allowed while impersonating a user",
        **kwargs,
    ) -> None:
        kwargs.setdefault("detail", {"reason": "impersonation_blocked"})
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(ServiceError):
    """Invalid state transition or duplicate resource (409)."""
    status_code = 409
    error_code = "CONFLICT"


class AccountLockedError(ServiceError):
    """Account is temporarily locked after repeated failures (423)."""
    status_code = 423
    error_code = "ACCOUNT_LOCKED"

    def __init__(
        self,
        locked_until: datetime,
        message: str = "Account is temporarily locked due to too many failed login attempts",
        *,
        now: Optional[datetime] = None,
    ) -> None:
        current = now or datetime.now(timezone.utc)
        remaining = (locked_until - current).total_seconds()
        self.locked_until = locked_until
        self.retry_after_seconds = max(0, math.ceil(remaining))
        super().__init__(
            message,
            detail={
                "lockedUntil": locked_until.isoformat(),
                "retryAfterSeconds": self.retry_after_seconds,
            },
        )

    @property
    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after_seconds)}


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMIT_ERROR"

    def __init__(
        self,
        message: str = "Too many requests. Please try again later.",
        *,
        retry_after_seconds: int = 0,
        detail: Optional[dict] = None,
    ) -> None:
        self.retry_after_seconds = max(0, int(retry_after_seconds))
        merged = {"retryAfterSeconds": self.retry_after_seconds}
        merged.update(detail or {})
        super().__init__(message, detail=merged)

    @property
    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after_seconds)}


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "SERVER_ERROR"


class EmailDeliveryError(ServerError):
    """Email provider rejected or failed the send."""


class CircuitOpenError(ServerError):
    """Guarded dependency is failing fast because its breaker is open."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "TokenInvalidError",
    "TokenExpiredError",
    "AuthenticationError",
    "AuthorizationError",
    "EmailNotVerifiedError",
    "ForbiddenError",
    "ImpersonationBlockedError",
    "NotFoundError",
    "ConflictError",
    "AccountLockedError",
    "RateLimitedError",
    "ServerError",
    "EmailDeliveryError",
    "CircuitOpenError",
]
