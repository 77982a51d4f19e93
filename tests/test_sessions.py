"""Session issuance, validation, refresh rotation and revocation."""

import asyncio
from datetime import timedelta

import pytest

from autohealer.service.audit import AuditAction
from autohealer.service.cleanup import SessionCleanupTask
from autohealer.service.errors import (
    InsufficientPrivilegeError,
    InvalidRefreshTokenError,
    InvalidSessionError,
    NotFoundError,
)
from autohealer.storage.models import utcnow


@pytest.fixture
def user(make_user):
    return make_user()


class TestCreateAndValidate:
    def test_raw_tokens_are_not_stored(self, sessions, memory_store, user):
        issued = sessions.create_session(user, ip_address="10.1.1.1", device_fingerprint="fp")
        stored = memory_store.get_session(issued.session_id)
        assert stored.access_token_hash != issued.access_token
        assert stored.refresh_token_hash != issued.refresh_token
        assert len(stored.access_token_hash) == 64
        assert stored.device_fingerprint == "fp"
        assert issued.expires_in == 24 * 60 * 60

    def test_validate_returns_user_and_session(self, sessions, user):
        issued = sessions.create_session(user)
        auth = sessions.validate(issued.access_token)
        assert auth.user.id == user.id
        assert auth.session.id == issued.session_id

    def test_validate_updates_last_activity(self, sessions, memory_store, user):
        issued = sessions.create_session(user)
        before = memory_store.get_session(issued.session_id).last_activity_at
        sessions.validate(issued.access_token)
        assert memory_store.get_session(issued.session_id).last_activity_at >= before

    def test_refresh_token_is_not_an_access_token(self, sessions, user):
        issued = sessions.create_session(user)
        with pytest.raises(InvalidSessionError):
            sessions.validate(issued.refresh_token)

    @pytest.mark.parametrize("token", ["", "garbage", "a.b.c", "a.b"])
    def test_malformed_tokens(self, sessions, token):
        with pytest.raises(InvalidSessionError):
            sessions.validate(token)

    def test_tampered_signature(self, sessions, user):
        issued = sessions.create_session(user)
        header, payload, signature = issued.access_token.split(".")
        forged = f"{header}.{payload}.{signature[::-1]}"
        with pytest.raises(InvalidSessionError):
            sessions.validate(forged)

    def test_non_ascii_signature_is_rejected(self, sessions, user):
        issued = sessions.create_session(user)
        header, payload, _ = issued.access_token.split(".")
        with pytest.raises(InvalidSessionError):
            sessions.validate(f"{header}.{payload}.éé")

    def test_expired_session_row(self, sessions, memory_store, user):
        issued = sessions.create_session(user)
        memory_store.sessions[issued.session_id].expires_at = utcnow() - timedelta(seconds=1)
        with pytest.raises(InvalidSessionError):
            sessions.validate(issued.access_token)

    def test_inactive_user(self, sessions, memory_store, user):
        issued = sessions.create_session(user)
        memory_store.set_user_active(user.id, False)
        with pytest.raises(InvalidSessionError):
            sessions.validate(issued.access_token)

    def test_locked_user(self, sessions, lockout, user):
        issued = sessions.create_session(user)
        lockout.manual_lock(user.id, "admin-id")
        with pytest.raises(InvalidSessionError):
            sessions.validate(issued.access_token)


class TestRefresh:
    def test_rotation_invalidates_old_pair(self, sessions, memory_store, user):
        issued = sessions.create_session(user)
        pair = sessions.refresh(issued.refresh_token)

        assert pair.access_token != issued.access_token
        assert pair.refresh_token != issued.refresh_token
        with pytest.raises(InvalidRefreshTokenError):
            sessions.refresh(issued.refresh_token)
        with pytest.raises(InvalidSessionError):
            sessions.validate(issued.access_token)

        auth = sessions.validate(pair.access_token)
        assert auth.session.id == issued.session_id
        assert memory_store.latest_audit_event(
            AuditAction.TOKEN_REFRESHED, issued.session_id
        )

    def test_access_token_cannot_refresh(self, sessions, user):
        issued = sessions.create_session(user)
        with pytest.raises(InvalidRefreshTokenError):
            sessions.refresh(issued.access_token)

    def test_non_ascii_signature_cannot_refresh(self, sessions, user):
        issued = sessions.create_session(user)
        header, payload, _ = issued.refresh_token.split(".")
        with pytest.raises(InvalidRefreshTokenError):
            sessions.refresh(f"{header}.{payload}.éé")

    def test_revoked_session_cannot_refresh(self, sessions, user):
        issued = sessions.create_session(user)
        sessions.revoke(issued.session_id, user)
        with pytest.raises(InvalidRefreshTokenError):
            sessions.refresh(issued.refresh_token)

    def test_inactive_user_cannot_refresh(self, sessions, memory_store, user):
        issued = sessions.create_session(user)
        memory_store.set_user_active(user.id, False)
        with pytest.raises(InvalidRefreshTokenError):
            sessions.refresh(issued.refresh_token)


class TestRevoke:
    def test_owner_revokes_own_session(self, sessions, user):
        issued = sessions.create_session(user)
        assert sessions.revoke(issued.session_id, user) is True
        assert sessions.revoke(issued.session_id, user) is False
        with pytest.raises(InvalidSessionError):
            sessions.validate(issued.access_token)

    def test_other_users_session_needs_privilege(self, sessions, make_user, user):
        issued = sessions.create_session(user)
        intruder = make_user("intruder@example.com", role="engineer")
        admin = make_user("admin@example.com", role="admin")

        with pytest.raises(InsufficientPrivilegeError):
            sessions.revoke(issued.session_id, intruder)
        assert sessions.revoke(issued.session_id, admin) is True

    def test_unknown_session(self, sessions, user):
        with pytest.raises(NotFoundError):
            sessions.revoke("missing", user)

    def test_revoke_all_keeps_current(self, sessions, memory_store, user):
        current = sessions.create_session(user)
        others = [sessions.create_session(user) for _ in range(3)]

        assert sessions.revoke_all(user.id, user, except_session_id=current.session_id) == 3
        sessions.validate(current.access_token)
        for issued in others:
            assert memory_store.get_session(issued.session_id).revoked_at is not None

    def test_revoke_all_for_other_user_needs_privilege(self, sessions, make_user, user):
        intruder = make_user("intruder@example.com")
        with pytest.raises(InsufficientPrivilegeError):
            sessions.revoke_all(user.id, intruder)


class TestListingAndCleanup:
    def test_lists_only_active_sessions(self, sessions, user):
        current = sessions.create_session(user)
        revoked = sessions.create_session(user)
        sessions.revoke(revoked.session_id, user)

        views = sessions.list_user_sessions(user.id, current.session_id)
        assert [v.id for v in views] == [current.session_id]
        assert views[0].is_current is True

    def test_cleanup_removes_expired_and_revoked(self, sessions, memory_store, user):
        live = sessions.create_session(user)
        expired = sessions.create_session(user)
        revoked = sessions.create_session(user)
        memory_store.sessions[expired.session_id].expires_at = utcnow() - timedelta(minutes=1)
        sessions.revoke(revoked.session_id, user)

        assert sessions.session_stats() == {"active": 1, "expired": 1, "revoked": 1}
        assert sessions.cleanup_expired() == 2
        assert sessions.cleanup_expired() == 0
        assert memory_store.get_session(live.session_id) is not None
        assert memory_store.get_session(expired.session_id) is None

    def test_cleanup_task_tick(self, sessions, user):
        issued = sessions.create_session(user)
        sessions.revoke(issued.session_id, user)
        task = SessionCleanupTask(sessions, interval_seconds=60)
        assert task.last_removed is None
        assert task.run_once() == 1
        assert task.last_removed == 1

    async def test_cleanup_loop_survives_failures_and_cancels(self, sessions, monkeypatch):
        calls = []

        def _boom():
            calls.append(1)
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(sessions, "cleanup_expired", _boom)
        task = SessionCleanupTask(sessions, interval_seconds=0.01)
        runner = asyncio.create_task(task.run_forever())
        while len(calls) < 2:
            await asyncio.sleep(0.01)
        runner.cancel()
        with pytest.raises(asyncio.CancelledError):
            await runner
