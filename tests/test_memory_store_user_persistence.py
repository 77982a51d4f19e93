import json
from datetime import timedelta
from pathlib import Path

import pytest

from autohealer.storage.errors import ConstraintViolation, StaleRecordError
from autohealer.storage.memory import MemoryStore
from autohealer.storage.models import AuditEvent, OneTimeToken, Session, TokenKind, utcnow


def _session(user_id):
    session = Session.new(user_id, ttl_minutes=30, ip_address="10.2.2.2")
    session.access_token_hash = "a" * 64
    session.refresh_token_hash = "r" * 64
    return session


def test_memory_store_persists_users_sessions_tokens_and_audit(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("Persist@Example.com", "persist", "hash", role="admin")
    store.begin_mfa_setup(user.id, secret="sealed-secret", backup_codes=["c1", "c2"])
    store.enable_mfa(user.id)
    session = store.create_session(_session(user.id))
    store.issue_one_time_token(
        TokenKind.PASSWORD_RESET, OneTimeToken.new(user.id, "t" * 64, timedelta(hours=1))
    )
    store.record_audit_event(AuditEvent.new("mfa_enabled", user_id=user.id, resource_id=user.id))

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user_by_email("persist@example.com")
    assert reloaded_user.id == user.id
    assert reloaded_user.role == "admin"
    assert reloaded_user.mfa_enabled is True
    assert reloaded_user.mfa_backup_codes == ["c1", "c2"]

    reloaded_session = reloaded.get_session(session.id)
    assert reloaded_session.ip_address == "10.2.2.2"
    assert reloaded_session.expires_at == session.expires_at

    assert len(reloaded.tokens[TokenKind.PASSWORD_RESET]) == 1
    assert reloaded.latest_audit_event("mfa_enabled", user.id) is not None


def test_state_file_never_holds_raw_tokens(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("a@example.com", "a", "hash")
    store.create_session(_session(user.id))
    state = json.loads((Path(tmp_path) / "state" / "memory_store.json").read_text())
    assert set(state["sessions"][0]) >= {"access_token_hash", "refresh_token_hash"}
    assert "access_token" not in state["sessions"][0]


def test_duplicate_email_is_a_constraint_violation(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("dup@example.com", "first", "hash")
    with pytest.raises(ConstraintViolation):
        store.create_user("DUP@example.com", "second", "hash")


def test_password_change_requires_expected_hash(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("a@example.com", "a", "hash-1")
    with pytest.raises(StaleRecordError):
        store.apply_password_change(
            user.id,
            expected_hash="something-else",
            password_hash="hash-2",
            password_history=["hash-1"],
            changed_at=utcnow(),
        )
    assert store.get_user(user.id).password_hash == "hash-1"


def test_returned_records_are_copies(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("a@example.com", "a", "hash")
    fetched = store.get_user(user.id)
    fetched.role = "super_admin"
    assert store.get_user(user.id).role == "viewer"


def test_corrupt_state_file_starts_empty(tmp_path):
    state_dir = Path(tmp_path) / "state"
    state_dir.mkdir()
    (state_dir / "memory_store.json").write_text("{not json")
    store = MemoryStore(fs_root=str(tmp_path))
    assert store.users == {}


def test_discard_persisted_state(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("a@example.com", "a", "hash")
    MemoryStore.discard_persisted_state(str(tmp_path))
    assert MemoryStore(fs_root=str(tmp_path)).users == {}
