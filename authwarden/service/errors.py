from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for authentication failures mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code``, a stable envelope
    ``error_code`` and a ``kind`` naming the auth outcome, so callers can
    branch on the outcome without parsing messages:

    - validation_failed (400)
    - token_invalid (400 / 401)
    - invalid_credentials (401)
    - account_locked (403)
    - verification_required (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - internal (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    kind: str = "validation_failed"

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
    """One or more input fields are missing or malformed (400).

    ``detail["fields"]`` maps every offending field to its message.
    """

    status_code = 400
    error_code = "validation_error"
    kind = "validation_failed"

    @classmethod
    def for_fields(cls, fields: dict[str, str]) -> "ValidationError":
        return cls("validation failed", detail={"fields": dict(fields)})


class ConflictError(ServiceError):
    """Email or username already taken (409)."""

    status_code = 409
    error_code = "conflict"
    kind = "conflict"

    @classmethod
    def for_fields(cls, fields: dict[str, str]) -> "ConflictError":
        return cls("account already exists", detail={"fields": dict(fields)})


class RateLimitedError(ServiceError):
    """Too many attempts from one client address (429)."""

    status_code = 429
    error_code = "rate_limited"
    kind = "rate_limited"

    def __init__(
        self,
        message: str = "too many login attempts, try again later",
        *,
        retry_after: int = 0,
    ) -> None:
        super().__init__(message, detail={"retry_after": max(int(retry_after), 0)})
        self.retry_after = max(int(retry_after), 0)


class InvalidCredentialsError(ServiceError):
    """Unknown email or wrong password (401)."""

    status_code = 401
    error_code = "unauthorized"
    kind = "invalid_credentials"


class AccountLockedError(ServiceError):
    """Account temporarily locked after repeated failures (403)."""

    status_code = 403
    error_code = "forbidden"
    kind = "account_locked"


class VerificationRequiredError(ServiceError):
    """Credentials are correct but the email address is unverified (403)."""

    status_code = 403
    error_code = "forbidden"
    kind = "verification_required"

    def __init__(self, *, user_id: str, email: str) -> None:
        super().__init__(
            "email verification required",
            detail={"requires_verification": True, "user_id": user_id, "email": email},
        )
        self.user_id = user_id
        self.email = email


class TokenInvalidError(ServiceError):
    """Token is unknown, expired, already used or fails verification (400)."""

    status_code = 400
    error_code = "validation_error"
    kind = "token_invalid"


class RefreshFailedError(TokenInvalidError):
    """Refresh token rejected; the client must log in again (401)."""

    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "refresh failed, login again") -> None:
        super().__init__(message)


class UnauthorizedError(TokenInvalidError):
    """Missing, invalid or revoked access token (401)."""

    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested account not found (404)."""

    status_code = 404
    error_code = "not_found"
    kind = "not_found"


class InternalError(ServiceError):
    """Backing store failed or timed out; safe to retry (500)."""

    status_code = 500
    error_code = "server_error"
    kind = "internal"

    def __init__(self, message: str = "internal error, please retry") -> None:
        super().__init__(message, detail={"retryable": True})


__all__ = [
    "ServiceError",
    "ValidationError",
    "ConflictError",
    "RateLimitedError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "VerificationRequiredError",
    "TokenInvalidError",
    "RefreshFailedError",
    "UnauthorizedError",
    "NotFoundError",
    "InternalError",
]
