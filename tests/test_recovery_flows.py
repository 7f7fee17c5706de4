"""Email verification, password reset and password change flows."""

from datetime import timedelta

import pytest

from authwarden.service.auth import (
    PASSWORD_RESET_REQUESTED_MESSAGE,
    VERIFICATION_RESENT_MESSAGE,
)
from authwarden.service.errors import (
    InvalidCredentialsError,
    NotFoundError,
    TokenInvalidError,
    UnauthorizedError,
    ValidationError,
)
from conftest import DEFAULT_PASSWORD, RecordingNotifier, build_engine

NEW_PASSWORD = "Another-Secret42"


class TestEmailVerification:
    async def test_verification_token_is_single_use(self, engine, notifier, register_user):
        """Test that a consumed verification token cannot be replayed."""
        await register_user(verified=False)
        _, _, token = notifier.last("verification")

        user = await engine.verify_email(token)
        assert user.is_verified is True
        assert user.verification_token is None

        with pytest.raises(TokenInvalidError) as excinfo:
            await engine.verify_email(token)
        assert excinfo.value.status_code == 400

    async def test_expired_verification_token(self, engine, notifier, register_user, clock):
        """Test that a verification token dies after 24 hours."""
        await register_user(verified=False)
        _, _, token = notifier.last("verification")

        clock.advance(hours=24)
        with pytest.raises(TokenInvalidError):
            await engine.verify_email(token)

    async def test_unknown_or_empty_verification_token(self, engine):
        """Test that junk tokens are rejected."""
        with pytest.raises(TokenInvalidError):
            await engine.verify_email("deadbeef")
        with pytest.raises(TokenInvalidError):
            await engine.verify_email("")

    async def test_resend_replaces_token(self, engine, notifier, register_user):
        """Test that a resend issues a fresh token and invalidates the old one."""
        await register_user(verified=False)
        _, _, old_token = notifier.last("verification")

        message = await engine.resend_verification_email("ada@example.com")

        assert message == VERIFICATION_RESENT_MESSAGE
        _, _, new_token = notifier.last("verification")
        assert new_token != old_token
        with pytest.raises(TokenInvalidError):
            await engine.verify_email(old_token)
        assert (await engine.verify_email(new_token)).is_verified

    async def test_resend_is_silent_for_unknown_and_verified(self, engine, notifier, register_user):
        """Test that resend never reveals whether the account exists."""
        await register_user(verified=True)
        sent_before = notifier.count("verification")

        unknown = await engine.resend_verification_email("nobody@example.com")
        verified = await engine.resend_verification_email("ada@example.com")
        malformed = await engine.resend_verification_email("nope")

        assert unknown == verified == malformed == VERIFICATION_RESENT_MESSAGE
        assert notifier.count("verification") == sent_before


class TestPasswordReset:
    async def test_unknown_email_produces_no_token_or_notification(self, engine, notifier):
        """Test that a reset for an unknown address changes nothing."""
        message = await engine.request_password_reset("nobody@example.com")

        assert message == PASSWORD_RESET_REQUESTED_MESSAGE
        assert notifier.count("reset") == 0
        assert all(user.reset_token is None for user in engine.store.users.values())

    async def test_known_email_gets_same_message(self, engine, notifier, register_user):
        """Test that the response is identical for a registered address."""
        registered = await register_user()

        message = await engine.request_password_reset("ADA@example.com")

        assert message == PASSWORD_RESET_REQUESTED_MESSAGE
        _, to_email, token = notifier.last("reset")
        assert to_email == "ada@example.com"
        assert engine.store.get_user(registered.user.id).reset_token == token

    async def test_reset_invalidates_sessions_and_old_tokens(
        self, engine, notifier, register_user
    ):
        """Test that completing a reset logs out every session."""
        registered = await register_user()
        login = await engine.authenticate("ada@example.com", DEFAULT_PASSWORD, "10.0.0.1")
        await engine.request_password_reset("ada@example.com")
        _, _, token = notifier.last("reset")

        revoked = await engine.complete_password_reset(token, NEW_PASSWORD)

        assert revoked == 2
        for access_token in (registered.access_token, login.access_token):
            with pytest.raises(UnauthorizedError):
                await engine.resolve_access_token(access_token)
        assert notifier.last("password_changed")[1] == "ada@example.com"

        with pytest.raises(InvalidCredentialsError):
            await engine.authenticate("ada@example.com", DEFAULT_PASSWORD, "10.0.0.2")
        result = await engine.authenticate("ada@example.com", NEW_PASSWORD, "10.0.0.2")
        assert result.session_id

    async def test_reset_token_is_single_use(self, engine, notifier, register_user):
        """Test that a reset token cannot be used twice."""
        await register_user()
        await engine.request_password_reset("ada@example.com")
        _, _, token = notifier.last("reset")

        await engine.complete_password_reset(token, NEW_PASSWORD)
        with pytest.raises(TokenInvalidError):
            await engine.complete_password_reset(token, "Yet-Another-Pass1")

    async def test_reset_token_expires_after_an_hour(
        self, engine, notifier, register_user, clock
    ):
        """Test that a stale reset token is rejected."""
        await register_user()
        await engine.request_password_reset("ada@example.com")
        _, _, token = notifier.last("reset")

        clock.advance(minutes=61)
        with pytest.raises(TokenInvalidError):
            await engine.complete_password_reset(token, NEW_PASSWORD)

    async def test_reset_validates_password_before_token(self, engine):
        """Test that a weak password is reported even with a bad token."""
        with pytest.raises(ValidationError) as excinfo:
            await engine.complete_password_reset("whatever", "short")
        assert set(excinfo.value.detail["fields"]) == {"password"}

    async def test_reset_clears_lockout(self, engine, notifier, register_user, clock):
        """Test that a completed reset unlocks the account."""
        registered = await register_user()
        engine.store.update_user_fields(
            registered.user.id,
            failed_login_count=5,
            locked_until=clock() + timedelta(minutes=30),
        )
        await engine.request_password_reset("ada@example.com")
        _, _, token = notifier.last("reset")

        await engine.complete_password_reset(token, NEW_PASSWORD)

        stored = engine.store.get_user(registered.user.id)
        assert stored.failed_login_count == 0
        assert stored.locked_until is None

    async def test_notification_failure_does_not_undo_reset(self, settings, clock):
        """Test that a failing mailer is logged and the state change stands."""
        notifier = RecordingNotifier(raise_error=True)
        engine = build_engine(settings, clock, notifier)
        registered = await engine.register(
            email="ada@example.com",
            password=DEFAULT_PASSWORD,
            username="ada",
            first_name="Ada",
            last_name="Lovelace",
        )

        message = await engine.request_password_reset("ada@example.com")

        assert message == PASSWORD_RESET_REQUESTED_MESSAGE
        assert engine.store.get_user(registered.user.id).reset_token is not None


class TestChangePassword:
    async def test_change_password_keeps_current_session(self, engine, notifier, register_user):
        """Test that other sessions end while the caller's survives."""
        registered = await register_user()
        other = await engine.authenticate("ada@example.com", DEFAULT_PASSWORD, "10.0.0.1")

        revoked = await engine.change_password(
            registered.user.id,
            DEFAULT_PASSWORD,
            NEW_PASSWORD,
            keep_session_id=registered.session_id,
            revoke_other_sessions=True,
        )

        assert revoked == 1
        await engine.resolve_access_token(registered.access_token)
        with pytest.raises(UnauthorizedError):
            await engine.resolve_access_token(other.access_token)
        assert notifier.count("password_changed") == 1

    async def test_change_password_without_revocation(self, engine, register_user):
        """Test that sessions survive when revocation is not requested."""
        registered = await register_user()
        other = await engine.authenticate("ada@example.com", DEFAULT_PASSWORD, "10.0.0.1")

        assert await engine.change_password(registered.user.id, DEFAULT_PASSWORD, NEW_PASSWORD) == 0
        await engine.resolve_access_token(other.access_token)
        await engine.authenticate("ada@example.com", NEW_PASSWORD, "10.0.0.1")

    async def test_change_password_wrong_current(self, engine, register_user):
        """Test that the current password must match."""
        registered = await register_user()

        with pytest.raises(InvalidCredentialsError) as excinfo:
            await engine.change_password(registered.user.id, "not-it-at-all", NEW_PASSWORD)
        assert excinfo.value.status_code == 400

    async def test_change_password_validates_new_password(self, engine, register_user):
        """Test that the new password obeys the length policy."""
        registered = await register_user()

        with pytest.raises(ValidationError) as excinfo:
            await engine.change_password(registered.user.id, DEFAULT_PASSWORD, "tiny")
        assert set(excinfo.value.detail["fields"]) == {"new_password"}

    async def test_change_password_unknown_user(self, engine):
        """Test that an unknown user id is NotFound."""
        with pytest.raises(NotFoundError):
            await engine.change_password("missing", DEFAULT_PASSWORD, NEW_PASSWORD)
