from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that clients can branch on:
    - validation_error (400), weak_password (400), same_password (400)
    - unauthorized (401), invalid_credentials (401), account_locked (401),
      invalid_token (401), expired_token (401)
    - forbidden (403), mfa_required (403)
    - not_found (404), session_not_found (404)
    - conflict (409)
    - rate_limited (429)
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


class WeakPasswordError(ValidationError):
    """Candidate password violates a policy rule (400)."""
    error_code = "weak_password"

    def __init__(self, message: str, *, rule: str) -> None:
        super().__init__(message, detail={"rule": rule})
        self.rule = rule


class SamePasswordError(ValidationError):
    """New password matches the current one (400)."""
    error_code = "same_password"


class NoPasswordSetError(ValidationError):
    """Account has no password (passwordless-only) (400)."""
    error_code = "no_password_set"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    error_code = "invalid_credentials"


class CurrentPasswordIncorrectError(InvalidCredentialsError):
    """Only raised inside the authenticated change-password flow."""


class AccountLockedError(AuthenticationError):
    """Too many failed sign-ins; carries the remaining lock time."""
    error_code = "account_locked"

    def __init__(self, retry_after_minutes: int) -> None:
        super().__init__(
            f"Account is locked. Try again in {retry_after_minutes} minutes",
            detail={"retry_after_minutes": retry_after_minutes},
        )
        self.retry_after_minutes = retry_after_minutes


class InvalidTokenError(AuthenticationError):
    """Token is unknown, malformed, rotated, or revoked (401)."""
    error_code = "invalid_token"


class ExpiredTokenError(InvalidTokenError):
    """Token was valid but its expiry has passed (401)."""
    error_code = "expired_token"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class MfaRequiredError(ForbiddenError):
    """Principal has MFA enabled but has not completed a second factor.

    Kept distinct from ``AuthenticationError`` so clients can route into the
    challenge flow instead of back to sign-in.
    """
    error_code = "mfa_required"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class AccountNotFoundError(NotFoundError):
    pass


class SessionNotFoundError(NotFoundError):
    error_code = "session_not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "rate limit exceeded", *, retry_after: int = 0) -> None:
        super().__init__(message, detail={"retry_after": retry_after})
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "WeakPasswordError",
    "SamePasswordError",
    "NoPasswordSetError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "CurrentPasswordIncorrectError",
    "AccountLockedError",
    "InvalidTokenError",
    "ExpiredTokenError",
    "ForbiddenError",
    "MfaRequiredError",
    "NotFoundError",
    "AccountNotFoundError",
    "SessionNotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
