from __future__ import annotations

import copy
import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from autohealer.logging import get_logger
from autohealer.storage.common import (
    deserialize_audit_event,
    deserialize_session,
    deserialize_token,
    deserialize_user,
    normalize_email,
    push_password_history,
    serialize_audit_event,
    serialize_session,
    serialize_token,
    serialize_user,
)
from autohealer.storage.errors import ConstraintViolation, StaleRecordError
from autohealer.storage.models import (
    AuditEvent,
    OneTimeToken,
    Role,
    Session,
    TokenKind,
    User,
    utcnow,
)


class MemoryStore:
    """In-process store for tests and single-node development.

    All state lives in dicts guarded by one re-entrant lock. Each public
    method holds the lock for its whole read-modify-write, which gives the
    same atomicity the postgres store gets from conditional updates. State is
    mirrored to ``<fs_root>/state/memory_store.json`` after every mutation.
    """

    def __init__(self, fs_root: str = "/tmp/autohealer") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.tokens: Dict[str, Dict[str, OneTimeToken]] = {
            TokenKind.PASSWORD_RESET: {},
            TokenKind.EMAIL_VERIFICATION: {},
        }
        self.audit_events: List[AuditEvent] = []
        # RLock so helpers can re-acquire within one public call
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    @staticmethod
    def discard_persisted_state(fs_root: str) -> None:
        """Remove the JSON mirror so the next instance starts empty."""
        (Path(fs_root) / "state" / "memory_store.json").unlink(missing_ok=True)

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _clone(obj):
        return copy.deepcopy(obj)

    def _user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        return next((u for u in self.users.values() if u.email == normalized), None)

    # users
    def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        role: str = Role.VIEWER,
        is_active: bool = True,
        must_change_password: bool = False,
        email_verified: bool = False,
    ) -> User:
        with self._data_lock:
            if self._user_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                email=normalize_email(email),
                username=username,
                password_hash=password_hash,
                role=role,
                is_active=is_active,
                must_change_password=must_change_password,
                password_changed_at=now,
                email_verified=email_verified,
                email_verified_at=now if email_verified else None,
                created_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return self._clone(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._clone(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._user_by_email(email)
            return self._clone(user) if user else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            self._persist_state()
            return self._clone(user)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            self._persist_state()
            return self._clone(user)

    # lockout
    def record_failed_login(
        self, user_id: str, *, threshold: int, lockout_until: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts += 1
            if user.failed_login_attempts >= threshold and not user.is_locked:
                user.is_locked = True
                user.lockout_until = lockout_until
            self._persist_state()
            return self._clone(user)

    def expire_lockout(self, user_id: str, now: datetime) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if (
                not user
                or not user.is_locked
                or user.lockout_until is None
                or user.lockout_until > now
            ):
                return False
            user.is_locked = False
            user.lockout_until = None
            user.failed_login_attempts = 0
            self._persist_state()
            return True

    def lock_user(
        self, user_id: str, *, lockout_until: datetime, failed_attempts: int
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_locked = True
            user.lockout_until = lockout_until
            user.failed_login_attempts = failed_attempts
            self._persist_state()
            return self._clone(user)

    def clear_lockout(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_locked = False
            user.lockout_until = None
            user.failed_login_attempts = 0
            self._persist_state()
            return self._clone(user)

    def record_login_success(self, user_id: str, now: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts = 0
            user.is_locked = False
            user.lockout_until = None
            user.last_login_at = now
            self._persist_state()
            return self._clone(user)

    def lockout_counts(self, now: datetime) -> Dict[str, int]:
        with self._data_lock:
            locked = sum(1 for u in self.users.values() if u.lock_in_effect(now))
            with_failures = sum(
                1 for u in self.users.values() if u.failed_login_attempts > 0
            )
            return {"locked_accounts": locked, "accounts_with_failures": with_failures}

    # passwords
    def apply_password_change(
        self,
        user_id: str,
        *,
        expected_hash: str,
        password_hash: str,
        password_history: List[str],
        changed_at: datetime,
        keep_session_id: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            if user.password_hash != expected_hash:
                raise StaleRecordError("user", user_id)
            user.password_hash = password_hash
            user.password_history = list(password_history)
            user.password_changed_at = changed_at
            user.must_change_password = False
            revoked = self._revoke_user_sessions(
                user_id, changed_at, except_session_id=keep_session_id
            )
            self._persist_state()
            return revoked

    def issue_one_time_token(self, kind: str, token: OneTimeToken) -> OneTimeToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": token.user_id})
            bucket = self.tokens[kind]
            for token_id, existing in list(bucket.items()):
                if existing.user_id == token.user_id and existing.used_at is None:
                    bucket.pop(token_id)
            bucket[token.id] = token
            self._persist_state()
            return self._clone(token)

    def _redeem_token(
        self, kind: str, token_hash: str, now: datetime
    ) -> Optional[OneTimeToken]:
        for token in self.tokens[kind].values():
            if token.token_hash == token_hash and token.is_redeemable(now):
                token.used_at = now
                return token
        return None

    def complete_password_reset(
        self, token_hash: str, *, password_hash: str, now: datetime
    ) -> Optional[User]:
        with self._data_lock:
            token = self._redeem_token(TokenKind.PASSWORD_RESET, token_hash, now)
            if not token:
                return None
            user = self.users.get(token.user_id)
            if not user:
                token.used_at = None
                return None
            user.password_hash = password_hash
            user.password_history = []
            user.password_changed_at = now
            user.must_change_password = False
            self._revoke_user_sessions(user.id, now)
            self._persist_state()
            return self._clone(user)

    def complete_email_verification(
        self, token_hash: str, now: datetime
    ) -> Optional[User]:
        with self._data_lock:
            token = self._redeem_token(TokenKind.EMAIL_VERIFICATION, token_hash, now)
            if not token:
                return None
            user = self.users.get(token.user_id)
            if not user or user.email_verified:
                token.used_at = None
                return None
            user.email_verified = True
            user.email_verified_at = now
            self._persist_state()
            return self._clone(user)

    # mfa
    def begin_mfa_setup(
        self, user_id: str, *, secret: str, backup_codes: List[str]
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.mfa_enabled:
                return None
            user.mfa_secret = secret
            user.mfa_backup_codes = list(backup_codes)
            self._persist_state()
            return self._clone(user)

    def enable_mfa(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.mfa_enabled or not user.mfa_secret:
                return None
            user.mfa_enabled = True
            self._persist_state()
            return self._clone(user)

    def disable_mfa(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.mfa_enabled:
                return None
            user.mfa_enabled = False
            user.mfa_secret = None
            user.mfa_backup_codes = []
            self._persist_state()
            return self._clone(user)

    def replace_backup_codes(
        self, user_id: str, backup_codes: List[str]
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.mfa_enabled:
                return None
            user.mfa_backup_codes = list(backup_codes)
            self._persist_state()
            return self._clone(user)

    def consume_backup_code(
        self, user_id: str, matches: Callable[[str], bool]
    ) -> Optional[int]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.mfa_backup_codes:
                return None
            for index, stored in enumerate(user.mfa_backup_codes):
                if matches(stored):
                    del user.mfa_backup_codes[index]
                    self._persist_state()
                    return len(user.mfa_backup_codes)
            return None

    def emergency_disable_mfa(
        self, target_user_id: str, *, audit_event: AuditEvent, now: datetime
    ) -> Optional[int]:
        with self._data_lock:
            user = self.users.get(target_user_id)
            if not user or not user.is_active or not user.mfa_enabled:
                return None
            user.mfa_enabled = False
            user.mfa_secret = None
            user.mfa_backup_codes = []
            revoked = self._revoke_user_sessions(target_user_id, now)
            self.audit_events.append(audit_event)
            self._persist_state()
            return revoked

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "session user missing", {"user_id": session.user_id}
                )
            self.sessions[session.id] = self._clone(session)
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return self._clone(session) if session else None

    def get_session_by_access_hash(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            session = next(
                (s for s in self.sessions.values() if s.access_token_hash == token_hash),
                None,
            )
            return self._clone(session) if session else None

    def get_session_by_refresh_hash(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            session = next(
                (s for s in self.sessions.values() if s.refresh_token_hash == token_hash),
                None,
            )
            return self._clone(session) if session else None

    def touch_session(
        self, session_id: str, access_token_hash: str, now: datetime
    ) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if (
                not session
                or session.access_token_hash != access_token_hash
                or not session.is_usable(now)
            ):
                return False
            session.last_activity_at = now
            self._persist_state()
            return True

    def rotate_session_tokens(
        self,
        session_id: str,
        *,
        expected_refresh_hash: str,
        access_token_hash: str,
        refresh_token_hash: str,
        now: datetime,
    ) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if (
                not session
                or session.refresh_token_hash != expected_refresh_hash
                or not session.is_usable(now)
            ):
                return False
            session.access_token_hash = access_token_hash
            session.refresh_token_hash = refresh_token_hash
            session.last_activity_at = now
            self._persist_state()
            return True

    def revoke_session(self, session_id: str, now: datetime) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or session.revoked_at is not None:
                return False
            session.revoked_at = now
            self._persist_state()
            return True

    def _revoke_user_sessions(
        self, user_id: str, now: datetime, *, except_session_id: Optional[str] = None
    ) -> int:
        revoked = 0
        for session in self.sessions.values():
            if (
                session.user_id == user_id
                and session.revoked_at is None
                and session.id != except_session_id
            ):
                session.revoked_at = now
                revoked += 1
        return revoked

    def revoke_user_sessions(
        self, user_id: str, now: datetime, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            revoked = self._revoke_user_sessions(
                user_id, now, except_session_id=except_session_id
            )
            if revoked:
                self._persist_state()
            return revoked

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            active = [
                self._clone(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_usable(now)
            ]
            return sorted(active, key=lambda s: s.last_activity_at, reverse=True)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, s in self.sessions.items()
                if s.expires_at <= now or s.revoked_at is not None
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def session_counts(self, now: datetime) -> Dict[str, int]:
        with self._data_lock:
            counts = {"active": 0, "expired": 0, "revoked": 0}
            for session in self.sessions.values():
                if session.revoked_at is not None:
                    counts["revoked"] += 1
                elif session.expires_at <= now:
                    counts["expired"] += 1
                else:
                    counts["active"] += 1
            return counts

    # audit
    def record_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._data_lock:
            self.audit_events.append(event)
            self._persist_state()
            return event

    def latest_audit_event(
        self, action: str, resource_id: str
    ) -> Optional[AuditEvent]:
        with self._data_lock:
            matching = [
                e
                for e in self.audit_events
                if e.action == action and e.resource_id == resource_id
            ]
            if not matching:
                return None
            return self._clone(max(matching, key=lambda e: e.created_at))

    def list_audit_events(self, action: str, limit: int = 50) -> List[AuditEvent]:
        with self._data_lock:
            matching = [e for e in self.audit_events if e.action == action]
            matching.sort(key=lambda e: e.created_at, reverse=True)
            return [self._clone(e) for e in matching[:limit]]

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [serialize_user(u) for u in self.users.values()],
            "sessions": [serialize_session(s) for s in self.sessions.values()],
            "tokens": [
                serialize_token(token, kind)
                for kind, bucket in self.tokens.items()
                for token in bucket.values()
            ],
            "audit_events": [serialize_audit_event(e) for e in self.audit_events],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: deserialize_session(s) for s in data.get("sessions", [])
        }
        for entry in data.get("tokens", []):
            bucket = self.tokens.setdefault(entry["kind"], {})
            token = deserialize_token(entry)
            bucket[token.id] = token
        self.audit_events = [
            deserialize_audit_event(e) for e in data.get("audit_events", [])
        ]
        return True


