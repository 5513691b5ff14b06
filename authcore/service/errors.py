from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP ``status_code`` and a stable ``error_code``.
    Subclasses group into the categories callers branch on:
    validation, authentication failure, authorization failure, state
    conflict, throttling and transient storage trouble.
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


class ValidationError(ServiceError):
    """Malformed input, rejected before any state is touched (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class AuthenticationFailure(ServiceError):
    """Wrong or missing credential, token or code (401 unless overridden)."""
    status_code = 401
    error_code = "AUTH_REQUIRED"


class AuthRequired(AuthenticationFailure):
    """No usable credential header was presented."""
    error_code = "AUTH_REQUIRED"


class InvalidCredentials(AuthenticationFailure):
    error_code = "INVALID_CREDENTIALS"


class TokenInvalid(AuthenticationFailure):
    """Signature, expiry, issuer or audience check failed."""
    error_code = "TOKEN_INVALID"


class SessionInvalid(AuthenticationFailure):
    error_code = "SESSION_INVALID"


class AccountLocked(AuthenticationFailure):
    """Account is temporarily locked after repeated failures (423)."""
    status_code = 423
    error_code = "ACCOUNT_LOCKED"


class TwoFactorRequired(AuthenticationFailure):
    status_code = 403
    error_code = "TWO_FACTOR_REQUIRED"


class TwoFactorInvalid(AuthenticationFailure):
    """A second factor was supplied but did not validate.

    The message never says which factor was wrong.
    """
    status_code = 403
    error_code = "TWO_FACTOR_INVALID"


class EmailNotVerified(AuthenticationFailure):
    status_code = 403
    error_code = "EMAIL_NOT_VERIFIED"


class AuthorizationFailure(ServiceError):
    """Valid identity with insufficient rights (403)."""
    status_code = 403
    error_code = "PERMISSION_DENIED"


class PermissionDenied(AuthorizationFailure):
    error_code = "PERMISSION_DENIED"


class RoleDenied(AuthorizationFailure):
    error_code = "ROLE_DENIED"


class StateConflict(ServiceError):
    """Operation conflicts with current state, e.g. MFA already enabled (409)."""
    status_code = 409
    error_code = "CONFLICT"


class RateLimitExceeded(ServiceError):
    """Too many attempts in the current window (429)."""
    status_code = 429
    error_code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, message: str = "Too many requests", *, retry_after: int = 0) -> None:
        super().__init__(message, detail={"retryAfter": retry_after})
        self.retry_after = retry_after


class TransientError(ServiceError):
    """Storage unreachable or timed out; safe to retry (503).

    Kept distinct from authentication failures so that "could not check"
    is never reported as "checked and failed".
    """
    status_code = 503
    error_code = "SERVICE_UNAVAILABLE"


class InvalidConfiguration(ValueError):
    """Configuration is unusable; raised at startup, never per request."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationFailure",
    "AuthRequired",
    "InvalidCredentials",
    "TokenInvalid",
    "SessionInvalid",
    "AccountLocked",
    "TwoFactorRequired",
    "TwoFactorInvalid",
    "EmailNotVerified",
    "AuthorizationFailure",
    "PermissionDenied",
    "RoleDenied",
    "StateConflict",
    "RateLimitExceeded",
    "TransientError",
    "InvalidConfiguration",
]
