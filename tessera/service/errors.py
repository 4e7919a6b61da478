from __future__ import annotations

import contextlib
from typing import Iterator, Optional

from tessera.logging import get_logger
from tessera.storage.errors import StorageUnavailable

logger = get_logger(__name__)


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` hint and a stable
    ``error_code`` that clients can switch on. ``detail`` holds structured,
    non-sensitive context (for example ``remaining_attempts``).
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


class CredentialError(AuthenticationError):
    """A presented credential failed verification."""


class TokenExpiredError(CredentialError):
    status_code = 401
    error_code = "token_expired"


class BadSignatureError(CredentialError):
    status_code = 401
    error_code = "bad_signature"


class MalformedTokenError(CredentialError):
    status_code = 401
    error_code = "malformed_token"


class SessionInvalidError(AuthenticationError):
    """Session is missing, revoked, or does not match the credential (401)."""
    status_code = 401
    error_code = "session_invalid"


class OtpInvalidError(AuthenticationError):
    """Wrong one-time passcode; ``detail['remaining_attempts']`` says how many are left."""

    status_code = 401
    error_code = "otp_invalid"

    def __init__(self, message: str, *, remaining_attempts: int) -> None:
        super().__init__(message, detail={"remaining_attempts": remaining_attempts})
        self.remaining_attempts = remaining_attempts


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class CsrfError(ForbiddenError):
    status_code = 403
    error_code = "csrf_invalid"


class NotVerifiedError(ServiceError):
    status_code = 400
    error_code = "not_verified"


class TokenInvalidError(ServiceError):
    """Reset token unknown (404)."""
    status_code = 404
    error_code = "token_invalid"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class TokenConsumedError(ConflictError):
    status_code = 409
    error_code = "token_consumed"


class MaxAttemptsExceededError(ServiceError):
    status_code = 423
    error_code = "max_attempts_exceeded"


class AccountLockedError(ServiceError):
    status_code = 423
    error_code = "account_locked"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429); ``retry_after`` is in seconds."""

    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int) -> None:
        super().__init__(message, detail={"retry_after": retry_after})
        self.retry_after = retry_after


class ServiceUnavailableError(ServiceError):
    """Backing store unreachable (503); the cause is logged, never returned."""
    status_code = 503
    error_code = "service_unavailable"


@contextlib.contextmanager
def storage_guard(operation: str) -> Iterator[None]:
    """Translate storage connectivity failures into :class:`ServiceUnavailableError`."""
    try:
        yield
    except StorageUnavailable as exc:
        logger.error(
            "storage_unavailable",
            operation=operation,
            error=exc.message,
            cause=repr(exc.__cause__) if exc.__cause__ else None,
            exc_info=exc,
        )
        raise ServiceUnavailableError("service temporarily unavailable") from exc


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "CredentialError",
    "TokenExpiredError",
    "BadSignatureError",
    "MalformedTokenError",
    "SessionInvalidError",
    "OtpInvalidError",
    "ForbiddenError",
    "CsrfError",
    "NotVerifiedError",
    "TokenInvalidError",
    "ConflictError",
    "TokenConsumedError",
    "MaxAttemptsExceededError",
    "AccountLockedError",
    "RateLimitedError",
    "ServiceUnavailableError",
    "storage_guard",
]
