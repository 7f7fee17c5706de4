from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from authwarden.config import Settings
from authwarden.logging import email_fingerprint, get_logger, token_prefix
from authwarden.service.calls import fire_and_forget, guarded, store_call
from authwarden.service.email import NotificationPort
from authwarden.service.errors import (
    AccountLockedError,
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    RateLimitedError,
    RefreshFailedError,
    TokenInvalidError,
    UnauthorizedError,
    ValidationError,
    VerificationRequiredError,
)
from authwarden.service.sessions import SessionRegistry
from authwarden.service.throttle import AttemptThrottle
from authwarden.service.tokens import ACCESS, REFRESH, TokenIssuer
from authwarden.service.validation import (
    email_problem,
    normalize_email,
    password_problem,
    registration_problems,
)
from authwarden.storage.errors import ConstraintViolation
from authwarden.storage.models import Clock, UserAccount, utc_now

logger = get_logger(__name__)

T = TypeVar("T")

# Responses that must not reveal whether an account exists
INVALID_CREDENTIALS_MESSAGE = "invalid email or password"
PASSWORD_RESET_REQUESTED_MESSAGE = (
    "If your email is registered, a password reset link has been sent"
)
VERIFICATION_RESENT_MESSAGE = (
    "If your account exists and is not yet verified, a new verification email has been sent"
)

ACCOUNT_LOCKED_MESSAGE = "account is temporarily locked, try again later"
INVALID_VERIFICATION_TOKEN_MESSAGE = "invalid or expired verification token"
INVALID_RESET_TOKEN_MESSAGE = "invalid or expired reset token"


class CredentialStore(Protocol):
    def create_user(self, user: UserAccount) -> UserAccount: ...

    def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    def get_user_by_email(self, email: str) -> Optional[UserAccount]: ...

    def get_user_by_username(self, username: str) -> Optional[UserAccount]: ...

    def get_user_by_verification_token(
        self, token: str, now: datetime
    ) -> Optional[UserAccount]: ...

    def get_user_by_reset_token(self, token: str, now: datetime) -> Optional[UserAccount]: ...

    def update_user_fields(self, user_id: str, **changes: Any) -> Optional[UserAccount]: ...

    def increment_failed_login_count(self, user_id: str) -> int: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    session_id: Optional[str] = None
    email: Optional[str] = None
    is_verified: bool = False


@dataclass
class AuthResult:
    user: UserAccount
    access_token: str
    refresh_token: str
    session_id: str
    evicted_session_id: Optional[str] = None


class AuthEngine:
    """Registration, login, token refresh and account-recovery flows.

    Blocking store and notification calls run in worker threads under the
    configured timeouts. A store failure fails the operation with
    ``InternalError``; a notification failure is only logged, so the state
    change that triggered it always stands.
    """

    def __init__(
        self,
        store: CredentialStore,
        sessions: SessionRegistry,
        throttle: AttemptThrottle,
        tokens: TokenIssuer,
        notifier: NotificationPort,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        password_hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.throttle = throttle
        self.tokens = tokens
        self.notifier = notifier
        self.settings = settings
        self.logger = logger
        self._clock = clock or utc_now
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)
        # verified against on unknown-email logins
        self._dummy_hash: Optional[str] = None

    def _now(self) -> datetime:
        return self._clock()

    # -- backend plumbing ------------------------------------------------

    async def _store(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await store_call(
            func, *args, timeout=self.settings.store_timeout_seconds, **kwargs
        )

    async def _throttle(self, awaitable: Awaitable[T], op: str) -> T:
        return await guarded(awaitable, timeout=self.settings.store_timeout_seconds, op=op)

    async def _notify(self, func: Callable[..., Any], *args: Any) -> bool:
        return await fire_and_forget(
            func, *args, timeout=self.settings.notification_timeout_seconds
        )

    async def _hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self._pwd_hasher.hash, password)

    def _verify_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    async def _password_matches(self, user: UserAccount, password: str) -> bool:
        return await asyncio.to_thread(self._verify_hash, user.password_hash, password)

    async def _burn_password_check(self, password: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = await self._hash_password(uuid.uuid4().hex)
        await asyncio.to_thread(self._verify_hash, self._dummy_hash, password)

    def _password_problem(self, password: Optional[str]) -> Optional[str]:
        if not password:
            return "password is required"
        return password_problem(
            password,
            min_length=self.settings.password_min_length,
            max_length=self.settings.password_max_length,
        )

    # -- tokens and sessions ---------------------------------------------

    def _issue_tokens(
        self, user: UserAccount, session_id: str, refresh_jti: str
    ) -> tuple[str, str]:
        access_token = self.tokens.sign_access(
            {
                "sub": user.id,
                "email": user.email,
                "name": user.full_name,
                "role": user.role,
                "is_verified": user.is_verified,
                "sid": session_id,
            }
        )
        refresh_token = self.tokens.sign_refresh(
            {"sub": user.id, "sid": session_id, "jti": refresh_jti}
        )
        return access_token, refresh_token

    async def _open_session(
        self,
        user: UserAccount,
        *,
        ip_addr: Optional[str],
        user_agent: Optional[str],
    ) -> AuthResult:
        evicted = await self.sessions.admit(user.id)
        refresh_jti = str(uuid.uuid4())
        session = await self.sessions.open(
            user.id,
            refresh_token_ref=refresh_jti,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        access_token, refresh_token = self._issue_tokens(user, session.id, refresh_jti)
        return AuthResult(
            user=user,
            access_token=access_token,
            refresh_token=refresh_token,
            session_id=session.id,
            evicted_session_id=evicted,
        )

    # -- registration ----------------------------------------------------

    async def register(
        self,
        *,
        email: Optional[str],
        password: Optional[str],
        username: Optional[str],
        first_name: Optional[str],
        last_name: Optional[str],
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        problems = registration_problems(
            email=email,
            password=password,
            username=username,
            first_name=first_name,
            last_name=last_name,
            min_length=self.settings.password_min_length,
            max_length=self.settings.password_max_length,
        )
        if problems:
            self.logger.info("register_validation_failed", fields=sorted(problems))
            raise ValidationError.for_fields(problems)

        normalized_email = normalize_email(email)
        username = username.strip()
        # both lookups run so a client learns about every conflict at once
        email_owner = await self._store(self.store.get_user_by_email, normalized_email)
        username_owner = await self._store(self.store.get_user_by_username, username)
        conflicts: dict[str, str] = {}
        if email_owner:
            conflicts["email"] = "email already registered"
        if username_owner:
            conflicts["username"] = "username already taken"
        if conflicts:
            self.logger.info(
                "register_conflict",
                fields=sorted(conflicts),
                email_fingerprint=email_fingerprint(normalized_email),
            )
            raise ConflictError.for_fields(conflicts)

        now = self._now()
        verification_token = self.tokens.random_opaque_token()
        user = UserAccount.new(
            email=normalized_email,
            username=username,
            first_name=first_name,
            last_name=last_name,
            password_hash=await self._hash_password(password),
            verification_token=verification_token,
            verification_expires_at=now
            + timedelta(hours=self.settings.verification_token_ttl_hours),
            now=now,
        )
        try:
            user = await self._store(self.store.create_user, user)
        except ConstraintViolation as exc:
            # lost a race with a concurrent registration
            field = exc.detail.get("field", "email")
            self.logger.info("register_conflict_race", field=field)
            raise ConflictError.for_fields({field: f"{field} already registered"}) from exc

        result = await self._open_session(user, ip_addr=ip_addr, user_agent=user_agent)
        self.logger.info(
            "user_registered",
            user_id=user.id,
            email_fingerprint=email_fingerprint(user.email),
            session_id=result.session_id,
        )
        await self._notify(self.notifier.send_email_verification, user.email, verification_token)
        return result

    # -- login -----------------------------------------------------------

    async def authenticate(
        self,
        email: Optional[str],
        password: Optional[str],
        client_ip: Optional[str],
        *,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        """Verify credentials and open a session.

        Checks run in a fixed order and the first failure wins: network
        throttle, account lookup, account lock, password, email verification.
        The per-address counter is bumped for every attempt that passes the
        throttle, including ones for unknown emails. An attempt that ends on
        the account lock is released from the counter again.
        """
        ip_key = client_ip or "unknown"
        attempts = await self._throttle(self.throttle.get(ip_key), "throttle_get")
        if attempts >= self.settings.login_throttle_max_attempts:
            retry_after = await self._throttle(
                self.throttle.retry_after(ip_key), "throttle_retry_after"
            )
            self.logger.warning(
                "login_rate_limited",
                client_ip=ip_key,
                attempts=attempts,
                retry_after=retry_after,
            )
            raise RateLimitedError(retry_after=retry_after)
        await self._throttle(self.throttle.increment(ip_key), "throttle_increment")

        try:
            user = await self._check_credentials(email, password, ip_key)
        except AccountLockedError:
            await self._throttle(self.throttle.release(ip_key), "throttle_release")
            raise

        now = self._now()
        user = (
            await self._store(
                self.store.update_user_fields,
                user.id,
                failed_login_count=0,
                locked_until=None,
                last_login_at=now,
            )
            or user
        )

        if not user.is_verified:
            self.logger.info("login_requires_verification", user_id=user.id)
            raise VerificationRequiredError(user_id=user.id, email=user.email)

        result = await self._open_session(user, ip_addr=client_ip, user_agent=user_agent)
        self.logger.info(
            "login_succeeded",
            user_id=user.id,
            session_id=result.session_id,
            evicted_session_id=result.evicted_session_id,
            client_ip=ip_key,
        )
        return result

    async def _check_credentials(
        self, email: Optional[str], password: Optional[str], ip_key: str
    ) -> UserAccount:
        normalized_email = normalize_email(email or "")
        user = None
        if normalized_email:
            user = await self._store(self.store.get_user_by_email, normalized_email)
        if not user:
            # same argon2 cost as a wrong password for a real account
            await self._burn_password_check(password or "")
            self.logger.info(
                "login_failed",
                reason="unknown_email",
                email_fingerprint=email_fingerprint(normalized_email),
                client_ip=ip_key,
            )
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)

        now = self._now()
        if user.locked_until is not None:
            if user.is_locked(now):
                self.logger.info(
                    "login_blocked_locked",
                    user_id=user.id,
                    locked_until=user.locked_until.isoformat(),
                )
                raise AccountLockedError(ACCOUNT_LOCKED_MESSAGE)
            # lock elapsed: start counting from zero again
            user = (
                await self._store(
                    self.store.update_user_fields,
                    user.id,
                    locked_until=None,
                    failed_login_count=0,
                )
                or user
            )
            self.logger.info("account_lock_expired", user_id=user.id)

        if not await self._password_matches(user, password or ""):
            failures = await self._store(self.store.increment_failed_login_count, user.id)
            if failures >= self.settings.max_login_attempts:
                locked_until = now + timedelta(minutes=self.settings.lock_duration_minutes)
                await self._store(
                    self.store.update_user_fields, user.id, locked_until=locked_until
                )
                self.logger.warning(
                    "account_locked",
                    user_id=user.id,
                    failures=failures,
                    locked_until=locked_until.isoformat(),
                )
                raise AccountLockedError(
                    "account locked after repeated failed attempts, try again in "
                    f"{self.settings.lock_duration_minutes} minutes"
                )
            self.logger.info(
                "login_failed",
                reason="bad_password",
                user_id=user.id,
                failures=failures,
                client_ip=ip_key,
            )
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)
        return user

    # -- refresh ---------------------------------------------------------

    async def refresh(self, refresh_token: Optional[str]) -> AuthResult:
        """Exchange a refresh token for a new token pair on the same session.

        Every rejection surfaces as the same ``RefreshFailedError``; the
        specific reason is only logged.
        """
        claims = self.tokens.verify(refresh_token or "", REFRESH)
        if not claims:
            self.logger.info("refresh_failed", reason="invalid_token")
            raise RefreshFailedError()
        user_id = claims.get("sub")
        session_id = claims.get("sid")
        if not user_id or not session_id:
            self.logger.info("refresh_failed", reason="missing_claims")
            raise RefreshFailedError()

        session = await self.sessions.get(session_id)
        if not session or session.user_id != user_id or not session.is_active(self._now()):
            self.logger.info("refresh_failed", reason="session_inactive", session_id=session_id)
            raise RefreshFailedError()
        if (
            self.settings.revoke_rotated_refresh_tokens
            and session.refresh_token_ref != claims.get("jti")
        ):
            self.logger.warning(
                "refresh_failed",
                reason="rotated_token_reused",
                session_id=session_id,
                token_prefix=token_prefix(claims.get("jti")),
            )
            raise RefreshFailedError()

        user = await self._store(self.store.get_user, user_id)
        if not user:
            self.logger.info("refresh_failed", reason="user_missing", user_id=user_id)
            raise RefreshFailedError()

        refresh_jti = str(uuid.uuid4())
        if not await self.sessions.bind_refresh(session_id, refresh_jti):
            # session was revoked between the lookup and the update
            self.logger.info("refresh_failed", reason="session_revoked", session_id=session_id)
            raise RefreshFailedError()
        access_token, new_refresh_token = self._issue_tokens(user, session_id, refresh_jti)
        self.logger.info("tokens_refreshed", user_id=user.id, session_id=session_id)
        return AuthResult(
            user=user,
            access_token=access_token,
            refresh_token=new_refresh_token,
            session_id=session_id,
        )

    # -- email verification ----------------------------------------------

    async def verify_email(self, token: Optional[str]) -> UserAccount:
        if not token:
            raise TokenInvalidError(INVALID_VERIFICATION_TOKEN_MESSAGE)
        user = await self._store(self.store.get_user_by_verification_token, token, self._now())
        if not user:
            self.logger.info("email_verification_failed", token_prefix=token_prefix(token))
            raise TokenInvalidError(INVALID_VERIFICATION_TOKEN_MESSAGE)
        updated = await self._store(
            self.store.update_user_fields,
            user.id,
            is_verified=True,
            verification_token=None,
            verification_expires_at=None,
        )
        self.logger.info("email_verified", user_id=user.id)
        return updated or user

    async def resend_verification_email(self, email: Optional[str]) -> str:
        if not email or email_problem(email):
            return VERIFICATION_RESENT_MESSAGE
        normalized_email = normalize_email(email)
        user = await self._store(self.store.get_user_by_email, normalized_email)
        if not user or user.is_verified:
            self.logger.info(
                "verification_resend_skipped",
                email_fingerprint=email_fingerprint(normalized_email),
                reason="verified" if user else "unknown_email",
            )
            return VERIFICATION_RESENT_MESSAGE

        token = self.tokens.random_opaque_token()
        await self._store(
            self.store.update_user_fields,
            user.id,
            verification_token=token,
            verification_expires_at=self._now()
            + timedelta(hours=self.settings.verification_token_ttl_hours),
        )
        self.logger.info("verification_token_reissued", user_id=user.id)
        await self._notify(self.notifier.send_email_verification, user.email, token)
        return VERIFICATION_RESENT_MESSAGE

    # -- password reset --------------------------------------------------

    async def request_password_reset(self, email: Optional[str]) -> str:
        if not email or email_problem(email):
            return PASSWORD_RESET_REQUESTED_MESSAGE
        normalized_email = normalize_email(email)
        user = await self._store(self.store.get_user_by_email, normalized_email)
        if not user:
            self.logger.info(
                "password_reset_unknown_email",
                email_fingerprint=email_fingerprint(normalized_email),
            )
            return PASSWORD_RESET_REQUESTED_MESSAGE

        token = self.tokens.random_opaque_token()
        await self._store(
            self.store.update_user_fields,
            user.id,
            reset_token=token,
            reset_expires_at=self._now()
            + timedelta(minutes=self.settings.reset_token_ttl_minutes),
        )
        self.logger.info("password_reset_requested", user_id=user.id)
        await self._notify(self.notifier.send_password_reset, user.email, token)
        return PASSWORD_RESET_REQUESTED_MESSAGE

    async def complete_password_reset(
        self, token: Optional[str], new_password: Optional[str]
    ) -> int:
        """Set a new password from a reset token; returns sessions invalidated."""
        problem = self._password_problem(new_password)
        if problem:
            raise ValidationError.for_fields({"password": problem})
        if not token:
            raise TokenInvalidError(INVALID_RESET_TOKEN_MESSAGE)
        user = await self._store(self.store.get_user_by_reset_token, token, self._now())
        if not user:
            self.logger.info("password_reset_failed", token_prefix=token_prefix(token))
            raise TokenInvalidError(INVALID_RESET_TOKEN_MESSAGE)

        await self._store(
            self.store.update_user_fields,
            user.id,
            password_hash=await self._hash_password(new_password),
            reset_token=None,
            reset_expires_at=None,
            failed_login_count=0,
            locked_until=None,
        )
        revoked = await self.sessions.revoke_all(user.id)
        self.logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        await self._notify(self.notifier.send_password_changed, user.email)
        return revoked

    async def change_password(
        self,
        user_id: str,
        current_password: Optional[str],
        new_password: Optional[str],
        *,
        keep_session_id: Optional[str] = None,
        revoke_other_sessions: bool = False,
    ) -> int:
        """Replace the password of a signed-in user; returns sessions invalidated."""
        user = await self._store(self.store.get_user, user_id)
        if not user:
            raise NotFoundError("user not found")
        if not await self._password_matches(user, current_password or ""):
            self.logger.info("password_change_rejected", user_id=user_id)
            raise InvalidCredentialsError(
                "current password is incorrect",
                status_code=400,
                error_code="validation_error",
            )
        problem = self._password_problem(new_password)
        if problem:
            raise ValidationError.for_fields({"new_password": problem})

        await self._store(
            self.store.update_user_fields,
            user.id,
            password_hash=await self._hash_password(new_password),
            failed_login_count=0,
            locked_until=None,
        )
        revoked = 0
        if revoke_other_sessions:
            revoked = await self.sessions.revoke_all(user.id, except_session_id=keep_session_id)
        self.logger.info("password_changed", user_id=user.id, sessions_revoked=revoked)
        await self._notify(self.notifier.send_password_changed, user.email)
        return revoked

    # -- logout ----------------------------------------------------------

    async def logout(self, token: Optional[str]) -> bool:
        """Invalidate the session named by an access or refresh token.

        Returns False when the session was already invalid.
        """
        claims = self.tokens.verify(token or "")
        if not claims or not claims.get("sid"):
            raise UnauthorizedError("invalid or expired token")
        revoked = await self.sessions.revoke(claims["sid"])
        self.logger.info(
            "logout", user_id=claims.get("sub"), session_id=claims["sid"], revoked=revoked
        )
        return revoked

    async def logout_all(self, user_id: str) -> int:
        revoked = await self.sessions.revoke_all(user_id)
        self.logger.info("logout_all", user_id=user_id, sessions_revoked=revoked)
        return revoked

    # -- request authentication ------------------------------------------

    async def resolve_access_token(self, token: Optional[str]) -> AuthContext:
        """Authenticate a bearer token against its still-valid session."""
        claims = self.tokens.verify(token or "", ACCESS)
        if not claims:
            raise UnauthorizedError("invalid or expired access token")
        user_id = claims.get("sub")
        session_id = claims.get("sid")
        session = await self.sessions.get(session_id) if session_id else None
        if not session or session.user_id != user_id or not session.is_active(self._now()):
            self.logger.info("access_token_session_inactive", session_id=session_id)
            raise UnauthorizedError("session revoked or expired")
        user = await self._store(self.store.get_user, user_id)
        if not user:
            self.logger.info("access_token_user_missing", user_id=user_id)
            raise UnauthorizedError("invalid or expired access token")
        return AuthContext(
            user_id=user.id,
            role=user.role,
            session_id=session_id,
            email=user.email,
            is_verified=user.is_verified,
        )

    async def get_user(self, user_id: str) -> UserAccount:
        user = await self._store(self.store.get_user, user_id)
        if not user:
            raise NotFoundError("user not found")
        return user


__all__ = [
    "AuthContext",
    "AuthEngine",
    "AuthResult",
    "CredentialStore",
    "INVALID_CREDENTIALS_MESSAGE",
    "PASSWORD_RESET_REQUESTED_MESSAGE",
    "VERIFICATION_RESENT_MESSAGE",
]
