from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    - service_unavailable (503)
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


class PasswordPolicyError(ValidationError):
    """A new password does not satisfy the local password policy."""


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(AuthenticationError):
    """Primary credentials were rejected.

    Unknown users, blocked users and wrong passwords all raise this with the
    same message so the response cannot be used to enumerate accounts.
    """

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ChallengeFailed(AuthenticationError):
    """A second-factor answer or OTP code did not match; retryable."""


class LoginRequired(AuthenticationError):
    """No authenticated session, or the session failed revalidation.

    Rendered as a redirect to the login page with the session cleared.
    """

    def __init__(self, reason: str = "login required", **kwargs) -> None:
        super().__init__(reason, **kwargs)
        self.reason = reason


class ForbiddenError(ServiceError):
    """Request refused outright, e.g. a missing or mismatched CSRF token (403)."""
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


class ServiceUnavailableError(ServiceError):
    """A required dependency is unavailable (503)."""
    status_code = 503
    error_code = "service_unavailable"


class BackendUnreachable(ServiceUnavailableError):
    """The identity backend could not be reached or answered unexpectedly."""

    def __init__(self, message: str = "identity service unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


class CacheUnavailable(ServiceUnavailableError):
    """The shared marker cache could not be reached.

    The rate limiter recovers from this locally; token operations let it
    propagate.
    """

    def __init__(self, message: str = "marker cache unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AnswerStoreUnavailable(ServiceUnavailableError):
    """The security answer store could not be read or written."""

    def __init__(self, message: str = "security answer store unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenError(NotFoundError):
    """Base for action-token failures.

    Every subclass renders identically ("not found") so callers cannot tell
    an expired token from an unknown one; ``reason`` is for logs only.
    """

    reason: str = "invalid"

    def __init__(self, message: str = "not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenMalformed(TokenError):
    reason = "malformed"


class TokenExpired(TokenError):
    reason = "expired"


class TokenAlreadyUsed(TokenError):
    reason = "already_used"


class TokenWrongPurpose(TokenError):
    reason = "wrong_purpose"


class TokenTooManyAttempts(TokenError):
    reason = "too_many_attempts"


class TokenAlreadyIssued(ConflictError):
    """An unconsumed, unexpired token already exists for (subject, purpose)."""

    def __init__(self, message: str = "token already issued", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "PasswordPolicyError",
    "AuthenticationError",
    "InvalidCredentials",
    "ChallengeFailed",
    "LoginRequired",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServiceUnavailableError",
    "BackendUnreachable",
    "CacheUnavailable",
    "AnswerStoreUnavailable",
    "TokenError",
    "TokenMalformed",
    "TokenExpired",
    "TokenAlreadyUsed",
    "TokenWrongPurpose",
    "TokenTooManyAttempts",
    "TokenAlreadyIssued",
]
