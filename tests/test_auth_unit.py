"""Unit tests for the authentication engine.

Tests for:
- Registration validation and conflicts
- Password hashing
- Login ordering and the verification gate
- Public user projection
"""

import pytest

from authwarden.service.auth import INVALID_CREDENTIALS_MESSAGE
from authwarden.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    ValidationError,
    VerificationRequiredError,
)
from conftest import DEFAULT_PASSWORD, RecordingNotifier, build_engine


class TestRegistration:
    """Tests for account registration."""

    async def test_register_reports_every_missing_field(self, engine):
        """Test that all missing fields are reported in one error."""
        with pytest.raises(ValidationError) as excinfo:
            await engine.register(
                email=None, password=None, username=None, first_name=None, last_name=None
            )

        err = excinfo.value
        assert err.status_code == 400
        assert err.kind == "validation_failed"
        assert set(err.detail["fields"]) == {
            "email",
            "password",
            "username",
            "first_name",
            "last_name",
        }

    async def test_register_rejects_short_password_and_bad_email(self, engine):
        """Test that malformed values are reported alongside each other."""
        with pytest.raises(ValidationError) as excinfo:
            await engine.register(
                email="not-an-email",
                password="short",
                username="ada",
                first_name="Ada",
                last_name="Lovelace",
            )

        fields = excinfo.value.detail["fields"]
        assert set(fields) == {"email", "password"}
        assert "at least 8" in fields["password"]

    async def test_register_creates_unverified_user_and_sends_token(self, engine, notifier):
        """Test that a new account is unverified and a verification email goes out."""
        result = await engine.register(
            email="  Ada@Example.com ",
            password=DEFAULT_PASSWORD,
            username="ada",
            first_name="Ada",
            last_name="Lovelace",
        )

        assert result.user.email == "ada@example.com"
        assert result.user.is_verified is False
        assert result.user.role == "user"
        assert result.access_token and result.refresh_token
        kind, to_email, token = notifier.last("verification")
        assert to_email == "ada@example.com"
        assert len(token) == 64

        stored = engine.store.get_user(result.user.id)
        assert stored.verification_token == token
        assert stored.password_hash != DEFAULT_PASSWORD
        assert stored.password_hash.startswith("$argon2id$")

    async def test_register_session_token_resolves(self, engine):
        """Test that the tokens returned by registration are usable immediately."""
        result = await engine.register(
            email="ada@example.com",
            password=DEFAULT_PASSWORD,
            username="ada",
            first_name="Ada",
            last_name="Lovelace",
        )

        ctx = await engine.resolve_access_token(result.access_token)
        assert ctx.user_id == result.user.id
        assert ctx.session_id == result.session_id

    @pytest.mark.parametrize(
        "notifier_flags", [{"raise_error": True}, {"fail": True}], ids=["raises", "refused"]
    )
    async def test_register_survives_notification_failure(
        self, settings, clock, notifier_flags
    ):
        """Test that a failed verification email does not undo registration."""
        notifier = RecordingNotifier(**notifier_flags)
        engine = build_engine(settings, clock, notifier)

        result = await engine.register(
            email="ada@example.com",
            password=DEFAULT_PASSWORD,
            username="ada",
            first_name="Ada",
            last_name="Lovelace",
        )

        assert result.access_token and result.refresh_token
        stored = engine.store.get_user(result.user.id)
        assert stored is not None and stored.verification_token
        assert await engine.sessions.is_active(result.session_id)

        # delivery recovers; the address can ask for a fresh token
        notifier.raise_error = notifier.fail = False
        await engine.resend_verification_email("ada@example.com")
        _, _, token = notifier.last("verification")
        assert token != stored.verification_token
        verified = await engine.verify_email(token)
        assert verified.is_verified is True

    async def test_register_reports_both_conflicts(self, engine, register_user):
        """Test that email and username conflicts are reported together."""
        await register_user()

        with pytest.raises(ConflictError) as excinfo:
            await engine.register(
                email="ADA@example.com",
                password=DEFAULT_PASSWORD,
                username="ada",
                first_name="Other",
                last_name="Person",
            )

        assert excinfo.value.status_code == 409
        assert set(excinfo.value.detail["fields"]) == {"email", "username"}

    async def test_register_username_conflict_only(self, engine, register_user):
        """Test that a taken username alone is a conflict."""
        await register_user()

        with pytest.raises(ConflictError) as excinfo:
            await engine.register(
                email="grace@example.com",
                password=DEFAULT_PASSWORD,
                username="ada",
                first_name="Grace",
                last_name="Hopper",
            )

        assert set(excinfo.value.detail["fields"]) == {"username"}


class TestLogin:
    """Tests for credential checks."""

    async def test_unverified_login_requires_verification(self, engine, register_user):
        """Test that a correct password on an unverified account is refused."""
        registered = await register_user(verified=False)

        with pytest.raises(VerificationRequiredError) as excinfo:
            await engine.authenticate("ada@example.com", DEFAULT_PASSWORD, "10.0.0.1")

        err = excinfo.value
        assert err.status_code == 403
        assert err.detail == {
            "requires_verification": True,
            "user_id": registered.user.id,
            "email": "ada@example.com",
        }

    async def test_register_verify_then_login(self, engine, notifier):
        """Test the full register, verification gate, verify, login path."""
        await engine.register(
            email="ada@example.com",
            password=DEFAULT_PASSWORD,
            username="ada",
            first_name="Ada",
            last_name="Lovelace",
        )
        with pytest.raises(VerificationRequiredError):
            await engine.authenticate("ada@example.com", DEFAULT_PASSWORD, "10.0.0.1")

        _, _, token = notifier.last("verification")
        verified = await engine.verify_email(token)
        assert verified.is_verified is True

        result = await engine.authenticate(
            "ada@example.com", DEFAULT_PASSWORD, "10.0.0.1", user_agent="pytest"
        )
        assert result.user.last_login_at is not None
        session = engine.store.get_session(result.session_id)
        assert session.user_agent == "pytest"
        assert session.ip_addr == "10.0.0.1"

    async def test_unknown_email_and_wrong_password_look_identical(self, engine, register_user):
        """Test that an unknown account gets the same error as a bad password."""
        await register_user()

        with pytest.raises(InvalidCredentialsError) as unknown:
            await engine.authenticate("nobody@example.com", DEFAULT_PASSWORD, "10.0.0.1")
        with pytest.raises(InvalidCredentialsError) as wrong:
            await engine.authenticate("ada@example.com", "wrong-password", "10.0.0.2")

        assert unknown.value.message == wrong.value.message == INVALID_CREDENTIALS_MESSAGE
        assert unknown.value.status_code == wrong.value.status_code == 401

    async def test_unknown_email_still_runs_a_password_check(self, engine, monkeypatch):
        """Test that a missing account costs one argon2 verification like a real one."""
        checked = []
        original = engine._verify_hash

        def _recording_verify(stored_hash, password):
            checked.append((stored_hash, password))
            return original(stored_hash, password)

        monkeypatch.setattr(engine, "_verify_hash", _recording_verify)

        for ip in ("10.0.0.1", "10.0.0.2"):
            with pytest.raises(InvalidCredentialsError):
                await engine.authenticate("nobody@example.com", DEFAULT_PASSWORD, ip)

        assert len(checked) == 2
        assert checked[0][0].startswith("$argon2id$")
        assert checked[0][0] == checked[1][0]
        assert checked[0][1] == DEFAULT_PASSWORD

    async def test_email_lookup_is_case_insensitive(self, engine, register_user):
        """Test that login normalizes the email."""
        await register_user()

        result = await engine.authenticate("  ADA@EXAMPLE.COM", DEFAULT_PASSWORD, "10.0.0.1")
        assert result.user.email == "ada@example.com"

    async def test_access_token_claims(self, engine, register_user):
        """Test that the access token carries identity and session claims."""
        await register_user()
        result = await engine.authenticate("ada@example.com", DEFAULT_PASSWORD, "10.0.0.1")

        claims = engine.tokens.verify(result.access_token, "access")
        assert claims["sub"] == result.user.id
        assert claims["sid"] == result.session_id
        assert claims["email"] == "ada@example.com"
        assert claims["name"] == "Ada Lovelace"
        assert claims["role"] == "user"
        assert claims["is_verified"] is True


class TestUserProjection:
    """Tests for the public user view."""

    async def test_public_dict_hides_secrets(self, engine, register_user):
        """Test that hashes, tokens and lockout counters are never exposed."""
        registered = await register_user(verified=False)
        user = engine.store.get_user(registered.user.id)

        public = user.public_dict()
        for hidden in (
            "password_hash",
            "verification_token",
            "verification_expires_at",
            "reset_token",
            "reset_expires_at",
            "failed_login_count",
            "locked_until",
        ):
            assert hidden not in public
        assert public["email"] == "ada@example.com"
        assert public["is_verified"] is False

    async def test_get_user_missing(self, engine):
        """Test that looking up an unknown id is NotFound."""
        with pytest.raises(NotFoundError):
            await engine.get_user("00000000-0000-0000-0000-000000000000")
