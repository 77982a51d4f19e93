import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from autohealer import app as app_module
from autohealer.api import schemas
from autohealer.config import Settings

JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


def test_security_headers_and_cors():
    client = TestClient(app_module.app)
    response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
    assert "access-control-allow-credentials" not in response.headers
    # Plain http in tests
    assert "Strict-Transport-Security" not in response.headers


def test_unknown_origin_gets_no_cors_header():
    client = TestClient(app_module.app)
    response = client.get("/healthz", headers={"Origin": "https://evil.example"})
    assert "access-control-allow-origin" not in response.headers


def test_allowed_origins_default():
    origins = app_module._allowed_origins()
    assert "http://localhost" in origins
    assert "http://localhost:3000" in origins


def test_allowed_origins_override(monkeypatch):
    settings = Settings(
        jwt_secret=JWT_SECRET,
        cors_allow_origins="https://ops.example.com, https://demo.local",
    )
    monkeypatch.setattr(app_module, "_settings", settings)
    assert app_module._allowed_origins() == ["https://ops.example.com", "https://demo.local"]


def test_create_app_returns_singleton():
    assert app_module.create_app() is app_module.app


def test_login_request_normalizes_email():
    req = schemas.LoginRequest(email=" Ops\u200b@Example.COM ", password="x")
    assert req.email == "ops@example.com"


@pytest.mark.parametrize(
    "email",
    ["invalid", "@example.com", "user@", "user@localhost", "us er@example.com", "a" * 65 + "@example.com"],
)
def test_login_request_rejects_bad_email(email):
    with pytest.raises(ValidationError):
        schemas.LoginRequest(email=email, password="x")


def test_oversized_fields_are_rejected():
    with pytest.raises(ValidationError):
        schemas.LoginRequest(email="ops@example.com", password="x" * 129)
    with pytest.raises(ValidationError):
        schemas.MfaVerifyRequest(token="1" * 17)


def test_auth_response_defaults_for_mfa_challenge():
    user = schemas.UserResponse(
        id="u1",
        email="ops@example.com",
        username="ops",
        role="viewer",
        is_active=True,
        email_verified=False,
        mfa_enabled=True,
        must_change_password=False,
        created_at="2024-01-01T00:00:00Z",
    )
    response = schemas.AuthResponse(user=user, mfa_required=True)
    assert response.access_token == ""
    assert response.refresh_token == ""
    assert response.session_id is None


class TestSettings:
    def test_defaults(self):
        settings = Settings(jwt_secret=JWT_SECRET)
        assert settings.lockout_threshold == 5
        assert settings.lockout_duration_minutes == 15
        assert settings.password_history_depth == 3
        assert settings.emergency_mfa_cooldown_minutes == 60
        assert settings.backup_code_count == 10

    def test_rejects_non_positive_durations(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=JWT_SECRET, lockout_threshold=0)
        with pytest.raises(ValidationError):
            Settings(jwt_secret=JWT_SECRET, session_ttl_minutes=-1)

    def test_rejects_negative_cooldown(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=JWT_SECRET, emergency_mfa_cooldown_minutes=-5)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("LOCKOUT_THRESHOLD", "7")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example")
        settings = Settings.from_env()
        assert settings.lockout_threshold == 7
        assert settings.cors_allow_origins == ["https://a.example"]

    def test_encryption_key_defaults_to_jwt_secret(self):
        settings = Settings(jwt_secret=JWT_SECRET)
        assert settings.encryption_key_material == JWT_SECRET
        other = Settings(jwt_secret=JWT_SECRET, mfa_encryption_key="separate-key-material")
        assert other.encryption_key_material == "separate-key-material"
