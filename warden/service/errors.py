from __future__ import annotations

from enum import Enum
from typing import Optional


class AuthErrorKind(str, Enum):
    """Failure categories produced by the authentication core."""

    CREDENTIAL_INVALID = "credential_invalid"
    TOKEN_MISSING = "token_missing"
    TOKEN_MALFORMED = "token_malformed"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_REVOKED = "token_revoked"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    PERMISSION_DENIED = "permission_denied"
    STORE_UNAVAILABLE = "store_unavailable"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines an HTTP status_code and a stable error_code:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - rate_limited (429)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient role (403)."""
    status_code = 403
    error_code = "forbidden"


class RateLimitedError(ServiceError):
    """Login quota exhausted (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ServiceUnavailableError(ServiceError):
    """Session store unreachable (503)."""
    status_code = 503
    error_code = "service_unavailable"


_TOKEN_REJECTED = "invalid or expired token"

# Client-facing messages stay generic so callers cannot tell failure modes apart
_KIND_TO_ERROR = {
    AuthErrorKind.CREDENTIAL_INVALID: (AuthenticationError, "invalid credentials"),
    AuthErrorKind.TOKEN_MISSING: (AuthenticationError, _TOKEN_REJECTED),
    AuthErrorKind.TOKEN_MALFORMED: (AuthenticationError, _TOKEN_REJECTED),
    AuthErrorKind.TOKEN_EXPIRED: (AuthenticationError, _TOKEN_REJECTED),
    AuthErrorKind.TOKEN_REVOKED: (AuthenticationError, _TOKEN_REJECTED),
    AuthErrorKind.RATE_LIMIT_EXCEEDED: (RateLimitedError, "too many login attempts"),
    AuthErrorKind.PERMISSION_DENIED: (ForbiddenError, "insufficient permissions"),
    AuthErrorKind.STORE_UNAVAILABLE: (
        ServiceUnavailableError,
        "authentication service temporarily unavailable",
    ),
}


def error_for_kind(
    kind: AuthErrorKind, *, detail: Optional[dict] = None, retry_after: int = 0
) -> ServiceError:
    """Translate a core failure into the matching HTTP-facing error."""
    error_cls, message = _KIND_TO_ERROR[kind]
    merged = {"reason": kind.value, **(detail or {})}
    if error_cls is RateLimitedError:
        return RateLimitedError(message, detail=merged, retry_after=retry_after)
    return error_cls(message, detail=merged)


__all__ = [
    "AuthErrorKind",
    "AuthenticationError",
    "ForbiddenError",
    "RateLimitedError",
    "ServiceError",
    "ServiceUnavailableError",
    "ValidationError",
    "error_for_kind",
]
