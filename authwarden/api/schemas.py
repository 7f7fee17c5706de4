from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})

# generous transport limits; the engine applies the real policy
_MAX_FIELD = 256
_MAX_PASSWORD = 1024
_MAX_TOKEN = 4096


class ErrorBody(BaseModel):
    """Error envelope body with a stable code and the auth outcome kind."""

    code: str = Field(..., description="Stable error code")
    kind: Optional[str] = None
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RegisterRequest(BaseModel):
    # every field optional here so the engine can report all missing ones together
    email: Optional[str] = Field(default=None, max_length=_MAX_FIELD)
    password: Optional[str] = Field(default=None, max_length=_MAX_PASSWORD)
    username: Optional[str] = Field(default=None, max_length=_MAX_FIELD)
    first_name: Optional[str] = Field(default=None, max_length=_MAX_FIELD)
    last_name: Optional[str] = Field(default=None, max_length=_MAX_FIELD)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=_MAX_FIELD)
    password: str = Field(..., max_length=_MAX_PASSWORD)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=_MAX_TOKEN)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., max_length=_MAX_TOKEN)


class EmailOnlyRequest(BaseModel):
    email: str = Field(..., max_length=_MAX_FIELD)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=_MAX_TOKEN)
    new_password: str = Field(..., max_length=_MAX_PASSWORD)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=_MAX_PASSWORD)
    new_password: str = Field(..., max_length=_MAX_PASSWORD)
    revoke_other_sessions: bool = True


class UserResponse(BaseModel):
    id: str
    email: str
    username: str
    first_name: str
    last_name: str
    role: str
    is_verified: bool
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    user: UserResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    session_id: str


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=_MAX_TOKEN)


class MessageResponse(BaseModel):
    message: str
    sessions_revoked: Optional[int] = None
