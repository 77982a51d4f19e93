"""Tests for the error envelope format and exception mapping.

Error responses share one shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from autohealer import app as app_module
from autohealer.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from autohealer.api.schemas import Envelope, ErrorBody
from autohealer.service import errors
from autohealer.service.runtime import get_runtime


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_domain_codes_are_accepted(self):
        for code in ("account_locked", "invalid_mfa_token", "policy_violation"):
            assert ErrorBody(code=code, message="x").code == code

    def test_unknown_code_is_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")


class TestErrorCodeMapping:
    """HTTP status to fallback error code."""

    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
        ],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_all_base_codes_covered(self):
        assert set(_STATUS_TO_CODE.values()) == {
            "unauthorized",
            "forbidden",
            "not_found",
            "rate_limited",
            "validation_error",
            "conflict",
            "server_error",
        }


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "Invalid credentials")
        data = json.loads(response.body.decode())
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"] == {
            "code": "unauthorized",
            "message": "Invalid credentials",
            "details": None,
        }
        assert data["request_id"]

    def test_error_response_list_details(self):
        response = _error_response(400, "Multiple errors", details=[{"field": "a"}, {"field": "b"}])
        data = json.loads(response.body.decode())
        assert len(data["error"]["details"]) == 2


class TestServiceErrors:
    """Every domain error carries a status and a code the envelope accepts."""

    @pytest.mark.parametrize("name", errors.__all__)
    def test_codes_are_valid_envelope_codes(self, name):
        cls = getattr(errors, name)
        ErrorBody(code=cls.error_code, message="x")

    @pytest.mark.parametrize(
        "exc,status",
        [
            (errors.InvalidCredentialsError(), 401),
            (errors.AccountLockedError(), 401),
            (errors.InvalidMfaTokenError(), 401),
            (errors.PolicyViolationError(["too short"]), 400),
            (errors.PasswordReusedError(), 400),
            (errors.InvalidOrExpiredTokenError(), 400),
            (errors.InsufficientPrivilegeError(), 403),
            (errors.CooldownActiveError(5), 429),
            (errors.MfaAlreadyEnabledError(), 409),
            (errors.UserNotFoundError(), 404),
        ],
    )
    def test_status_codes(self, exc, status):
        assert exc.status_code == status

    def test_invalid_credentials_hides_the_reason(self):
        assert errors.InvalidCredentialsError().message == "Invalid credentials"


class TestHandlersThroughTheApp:
    @pytest.fixture
    def client(self):
        return TestClient(app_module.app, raise_server_exceptions=False)

    def test_service_error_envelope_echoes_request_id(self, client):
        response = client.get(
            "/v1/auth/me",
            headers={"Authorization": "Bearer nope", "X-Request-ID": "req-123"},
        )
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "invalid_session"
        assert body["request_id"] == "req-123"
        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_validation_is_400(self, client):
        response = client.post("/v1/auth/login", json={"email": "a@example.com"})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"]["errors"][0]["loc"] == ["body", "password"]

    def test_uncaught_exception_is_500_without_internals(self, client, monkeypatch):
        async def _explode(token):
            raise RuntimeError("connection string with secrets")

        monkeypatch.setattr(get_runtime().auth, "authenticate", _explode)
        response = client.get("/v1/auth/me", headers={"Authorization": "Bearer x"})
        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "server_error"
        assert "secrets" not in body["error"]["message"]
