"""Tests for the error envelope format.

Error responses conform to:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "kind": "<auth outcome>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from authwarden import app as app_module
from authwarden.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from authwarden.api.schemas import Envelope, ErrorBody
from authwarden.service.errors import (
    AccountLockedError,
    InternalError,
    RateLimitedError,
    ServiceError,
)
from authwarden.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.kind is None
        assert error.details is None

    def test_error_body_rejects_unknown_code(self):
        """ErrorBody only accepts the stable code set."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")
        assert Envelope(status="ok").request_id


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [(400, "validation_error"), (401, "unauthorized"), (403, "forbidden"), (429, "rate_limited")],
    )
    def test_known_statuses(self, status, code):
        assert _STATUS_TO_CODE[status] == code
        assert _error_code_for_status(status) == code

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_shape(self):
        response = _error_response(403, "locked", code="forbidden", kind="account_locked")
        body = json.loads(response.body)

        assert response.status_code == 403
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "forbidden",
            "kind": "account_locked",
            "message": "locked",
            "details": None,
        }
        assert body["request_id"]


def _app_raising(exc: Exception) -> TestClient:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_service_error_carries_kind(self):
        response = _app_raising(AccountLockedError("account is locked")).get("/boom")

        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "forbidden"
        assert error["kind"] == "account_locked"

    def test_rate_limited_has_retry_after_header(self):
        response = _app_raising(RateLimitedError(retry_after=42)).get("/boom")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        assert response.json()["error"]["details"] == {"retry_after": 42}

    def test_internal_error_is_retryable(self):
        response = _app_raising(InternalError()).get("/boom")

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "server_error"
        assert error["details"] == {"retryable": True}

    def test_constraint_violation_is_conflict(self):
        exc = ConstraintViolation("email already exists", {"field": "email"})
        response = _app_raising(exc).get("/boom")

        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "email"}

    def test_overridden_status_on_service_error(self):
        exc = ServiceError("current password is incorrect", status_code=400)
        response = _app_raising(exc).get("/boom")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_uncaught_exception_hides_message(self):
        """Internal messages never reach the client for 5xx."""
        response = _app_raising(RuntimeError("dsn=postgres://secret")).get("/boom")

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["message"] == "internal server error"
        assert "secret" not in response.text


class TestAppEnvelope:
    def test_request_id_echoed_into_error(self):
        """The correlation id from X-Request-ID becomes the envelope request_id."""
        client = TestClient(app_module.app)
        response = client.get("/v1/me", headers={"X-Request-ID": "req-123"})

        assert response.status_code == 401
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_malformed_body_is_validation_error(self):
        client = TestClient(app_module.app)
        response = client.post("/v1/auth/login", json={"email": "a@example.com"})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert "password" in error["details"]["fields"]
