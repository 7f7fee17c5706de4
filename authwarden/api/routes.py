from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from authwarden.api.schemas import (
    AuthResponse,
    EmailOnlyRequest,
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    RegisterRequest,
    TokenRefreshRequest,
    UserResponse,
)
from authwarden.config import get_settings
from authwarden.logging import get_logger
from authwarden.service.auth import AuthContext, AuthResult
from authwarden.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=UserResponse(**result.user.public_dict()),
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        session_id=result.session_id,
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    token = _bearer_token(authorization)
    if not token:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    return await get_runtime().auth.resolve_access_token(token)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    request: Request,
    user_agent: Optional[str] = Header(None),
):
    """Create an account and open its first session.

    The account starts unverified and a verification email is sent. The
    returned tokens are usable immediately; a later password login still
    requires the email to be verified.

    Raises:
        400: If any field is missing or malformed (all fields reported)
        403: If registration is disabled in settings
        409: If the email or username is already taken
    """
    settings = get_settings()
    if not settings.allow_registration:
        raise _http_error("forbidden", "registration disabled", status_code=403)
    result = await get_runtime().auth.register(
        email=body.email,
        password=body.password,
        username=body.username,
        first_name=body.first_name,
        last_name=body.last_name,
        ip_addr=_client_ip(request),
        user_agent=user_agent,
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
):
    """Authenticate with email and password.

    Raises:
        401: If the credentials are invalid
        403: If the account is locked or the email is not verified
        429: If too many attempts came from this client address
    """
    result = await get_runtime().auth.authenticate(
        body.email, body.password, _client_ip(request), user_agent=user_agent
    )
    if result.evicted_session_id:
        response.headers["X-Session-Evicted"] = result.evicted_session_id
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    result = await get_runtime().auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    user = await get_runtime().auth.verify_email(body.token)
    return Envelope(status="ok", data=UserResponse(**user.public_dict()))


@router.post("/auth/verify-email/resend", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailOnlyRequest):
    message = await get_runtime().auth.resend_verification_email(body.email)
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailOnlyRequest):
    """Request a password reset link.

    The response is identical whether or not the email is registered.
    """
    message = await get_runtime().auth.request_password_reset(body.email)
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    revoked = await get_runtime().auth.complete_password_reset(body.token, body.new_password)
    return Envelope(
        status="ok",
        data=MessageResponse(message="password has been reset", sessions_revoked=revoked),
    )


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: AuthContext = Depends(get_principal),
):
    """Change the current user's password.

    Requires the current password. Other sessions are invalidated unless the
    client opts out with ``revoke_other_sessions=false``; the calling session
    always survives.
    """
    revoked = await get_runtime().auth.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        keep_session_id=principal.session_id,
        revoke_other_sessions=body.revoke_other_sessions,
    )
    return Envelope(
        status="ok",
        data=MessageResponse(message="password changed", sessions_revoked=revoked),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    token = _bearer_token(authorization) or (body.refresh_token if body else None)
    if not token:
        raise _http_error("unauthorized", "missing bearer or refresh token", status_code=401)
    await get_runtime().auth.logout(token)
    return Envelope(status="ok", data=MessageResponse(message="session revoked"))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_principal)):
    revoked = await get_runtime().auth.logout_all(principal.user_id)
    return Envelope(
        status="ok",
        data=MessageResponse(message="all sessions revoked", sessions_revoked=revoked),
    )


@router.get("/me", response_model=Envelope, tags=["account"])
async def me(principal: AuthContext = Depends(get_principal)):
    user = await get_runtime().auth.get_user(principal.user_id)
    return Envelope(status="ok", data=UserResponse(**user.public_dict()))
