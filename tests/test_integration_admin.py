"""Integration tests for the administrative endpoints.

Covers manual lock and unlock, lockout statistics, and the emergency MFA
override with its capability check and history.
"""

import pytest
from fastapi.testclient import TestClient

from autohealer import app as app_module
from autohealer.service.runtime import get_runtime

PASSWORD = "AdminPassword123!"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _create(email, role="viewer"):
    runtime = get_runtime()
    return runtime.store.create_user(
        email, email.split("@")[0], runtime.credentials.hash_password(PASSWORD), role=role
    )


def _headers(client, email, **extra):
    response = client.post(
        "/v1/auth/login", json={"email": email, "password": PASSWORD, **extra}
    )
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['data']['access_token']}"}


@pytest.fixture
def super_admin_headers(client):
    _create("root@example.com", role="super_admin")
    return _headers(client, "root@example.com")


@pytest.fixture
def admin_headers(client):
    _create("admin@example.com", role="admin")
    return _headers(client, "admin@example.com")


@pytest.fixture
def target():
    user = _create("engineer@example.com", role="engineer")
    mfa = get_runtime().mfa
    setup = mfa.begin_setup(user.id)
    mfa.confirm_setup(user.id, mfa.generate_totp(setup.secret))
    return user, setup


class TestLockEndpoints:
    def test_lock_blocks_login_and_unlock_restores_it(self, client, admin_headers):
        victim = _create("victim@example.com")

        locked = client.post(
            f"/v1/admin/users/{victim.id}/lock",
            headers=admin_headers,
            json={"reason": "compromised laptop"},
        )
        assert locked.status_code == 200
        assert locked.json()["data"]["locked"] is True

        login = client.post(
            "/v1/auth/login", json={"email": "victim@example.com", "password": PASSWORD}
        )
        assert login.json()["error"]["code"] == "account_locked"

        unlocked = client.post(f"/v1/admin/users/{victim.id}/unlock", headers=admin_headers)
        assert unlocked.json()["data"]["locked"] is False
        _headers(client, "victim@example.com")

    def test_lock_without_body(self, client, admin_headers):
        victim = _create("victim@example.com")
        response = client.post(f"/v1/admin/users/{victim.id}/lock", headers=admin_headers)
        assert response.status_code == 200

    def test_locked_user_sessions_stop_validating(self, client, admin_headers):
        victim = _create("victim@example.com")
        victim_headers = _headers(client, "victim@example.com")
        client.post(f"/v1/admin/users/{victim.id}/lock", headers=admin_headers)
        assert client.get("/v1/auth/me", headers=victim_headers).status_code == 401

    def test_unknown_user(self, client, admin_headers):
        response = client.post("/v1/admin/users/missing/lock", headers=admin_headers)
        assert response.status_code == 404

    @pytest.mark.parametrize("role", ["viewer", "engineer"])
    def test_requires_capability(self, client, role):
        _create(f"{role}@example.com", role=role)
        headers = _headers(client, f"{role}@example.com")
        victim = _create("victim@example.com")
        response = client.post(f"/v1/admin/users/{victim.id}/lock", headers=headers)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "insufficient_privilege"

    def test_requires_session(self, client):
        assert client.get("/v1/admin/lockouts/stats").status_code == 401

    def test_stats(self, client, admin_headers):
        victim = _create("victim@example.com")
        client.post(f"/v1/admin/users/{victim.id}/lock", headers=admin_headers)
        stats = client.get("/v1/admin/lockouts/stats", headers=admin_headers).json()["data"]
        assert stats["locked_accounts"] == 1
        assert stats["sessions_active"] >= 1


class TestEmergencyMfaDisable:
    def test_super_admin_override(self, client, super_admin_headers, target):
        user, setup = target
        code = get_runtime().mfa.generate_totp(setup.secret)
        target_headers = _headers(client, user.email, mfa_token=code)

        response = client.post(
            f"/v1/admin/users/{user.id}/mfa/emergency-disable",
            headers=super_admin_headers,
            json={"reason": "Lost phone, identity verified by call"},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["target_user_id"] == user.id
        assert data["sessions_revoked"] == 1
        assert data["audit_id"]
        assert client.get("/v1/auth/me", headers=target_headers).status_code == 401
        assert get_runtime().store.get_user(user.id).mfa_enabled is False
        _headers(client, user.email)

    def test_second_override_hits_cooldown(self, client, super_admin_headers, target):
        user, _ = target
        url = f"/v1/admin/users/{user.id}/mfa/emergency-disable"
        client.post(url, headers=super_admin_headers, json={"reason": "first"})

        mfa = get_runtime().mfa
        setup = mfa.begin_setup(user.id)
        mfa.confirm_setup(user.id, mfa.generate_totp(setup.secret))

        response = client.post(url, headers=super_admin_headers, json={"reason": "second"})
        assert response.status_code == 429
        error = response.json()["error"]
        assert error["code"] == "rate_limited"
        assert error["details"]["minutes_remaining"] > 0

    def test_reason_required(self, client, super_admin_headers, target):
        user, _ = target
        response = client.post(
            f"/v1/admin/users/{user.id}/mfa/emergency-disable",
            headers=super_admin_headers,
            json={},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_admin_is_not_enough(self, client, admin_headers, target):
        user, _ = target
        response = client.post(
            f"/v1/admin/users/{user.id}/mfa/emergency-disable",
            headers=admin_headers,
            json={"reason": "lost phone"},
        )
        assert response.status_code == 403

    def test_target_without_mfa(self, client, super_admin_headers):
        plain = _create("plain@example.com")
        response = client.post(
            f"/v1/admin/users/{plain.id}/mfa/emergency-disable",
            headers=super_admin_headers,
            json={"reason": "lost phone"},
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "already_disabled"

    def test_capability_endpoint(self, client, super_admin_headers, admin_headers):
        url = "/v1/admin/mfa/emergency-disable/capability"
        assert client.get(url, headers=super_admin_headers).json()["data"] == {"can_perform": True}
        assert client.get(url, headers=admin_headers).json()["data"] == {"can_perform": False}

    def test_history(self, client, super_admin_headers, admin_headers, target):
        user, _ = target
        client.post(
            f"/v1/admin/users/{user.id}/mfa/emergency-disable",
            headers=super_admin_headers,
            json={"reason": "lost phone"},
        )
        response = client.get(
            "/v1/admin/mfa/emergency-disable/history?limit=5", headers=admin_headers
        )
        items = response.json()["data"]["items"]
        assert len(items) == 1
        assert items[0]["target_email"] == "engineer@example.com"
        assert items[0]["admin_username"] == "root"
        assert items[0]["reason"] == "lost phone"
