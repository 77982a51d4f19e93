"""Storage contract and helpers shared between memory and postgres implementations.

Every method that reads state and then writes a decision based on it is a
single call on the store, so that the backend can run it under one lock or
one transaction. Services never read a row, decide, and write it back in two
separate calls.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

from autohealer.storage.models import AuditEvent, OneTimeToken, Session, User, utcnow


class AuthStore(Protocol):
    # users
    def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        role: str = ...,
        is_active: bool = True,
        must_change_password: bool = False,
        email_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]: ...

    # lockout
    def record_failed_login(
        self, user_id: str, *, threshold: int, lockout_until: datetime
    ) -> Optional[User]: ...

    def expire_lockout(self, user_id: str, now: datetime) -> bool: ...

    def lock_user(
        self, user_id: str, *, lockout_until: datetime, failed_attempts: int
    ) -> Optional[User]: ...

    def clear_lockout(self, user_id: str) -> Optional[User]: ...

    def record_login_success(self, user_id: str, now: datetime) -> Optional[User]: ...

    def lockout_counts(self, now: datetime) -> Dict[str, int]: ...

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
    ) -> int: ...

    def issue_one_time_token(self, kind: str, token: OneTimeToken) -> OneTimeToken: ...

    def complete_password_reset(
        self, token_hash: str, *, password_hash: str, now: datetime
    ) -> Optional[User]: ...

    def complete_email_verification(
        self, token_hash: str, now: datetime
    ) -> Optional[User]: ...

    # mfa
    def begin_mfa_setup(
        self, user_id: str, *, secret: str, backup_codes: List[str]
    ) -> Optional[User]: ...

    def enable_mfa(self, user_id: str) -> Optional[User]: ...

    def disable_mfa(self, user_id: str) -> Optional[User]: ...

    def replace_backup_codes(
        self, user_id: str, backup_codes: List[str]
    ) -> Optional[User]: ...

    def consume_backup_code(
        self, user_id: str, matches: Callable[[str], bool]
    ) -> Optional[int]: ...

    def emergency_disable_mfa(
        self, target_user_id: str, *, audit_event: AuditEvent, now: datetime
    ) -> Optional[int]: ...

    # sessions
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_access_hash(self, token_hash: str) -> Optional[Session]: ...

    def get_session_by_refresh_hash(self, token_hash: str) -> Optional[Session]: ...

    def touch_session(
        self, session_id: str, access_token_hash: str, now: datetime
    ) -> bool: ...

    def rotate_session_tokens(
        self,
        session_id: str,
        *,
        expected_refresh_hash: str,
        access_token_hash: str,
        refresh_token_hash: str,
        now: datetime,
    ) -> bool: ...

    def revoke_session(self, session_id: str, now: datetime) -> bool: ...

    def revoke_user_sessions(
        self, user_id: str, now: datetime, *, except_session_id: Optional[str] = None
    ) -> int: ...

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...

    def session_counts(self, now: datetime) -> Dict[str, int]: ...

    # audit
    def record_audit_event(self, event: AuditEvent) -> AuditEvent: ...

    def latest_audit_event(
        self, action: str, resource_id: str
    ) -> Optional[AuditEvent]: ...

    def list_audit_events(self, action: str, limit: int = 50) -> List[AuditEvent]: ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


def push_password_history(
    history: List[str], previous_hash: str, depth: int
) -> List[str]:
    """Prepend the outgoing hash and cap the list at ``depth`` entries."""
    if depth <= 0:
        return []
    trimmed = [h for h in history if h != previous_hash]
    return ([previous_hash] + trimmed)[:depth]


# ============================================================================
# SERIALIZATION - JSON-safe dicts for the memory store's state file
# ============================================================================


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


def serialize_user(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "username": user.username,
        "password_hash": user.password_hash,
        "role": user.role,
        "is_active": user.is_active,
        "password_changed_at": _dt(user.password_changed_at),
        "must_change_password": user.must_change_password,
        "password_history": list(user.password_history),
        "mfa_enabled": user.mfa_enabled,
        "mfa_secret": user.mfa_secret,
        "mfa_backup_codes": list(user.mfa_backup_codes),
        "failed_login_attempts": user.failed_login_attempts,
        "is_locked": user.is_locked,
        "lockout_until": _dt(user.lockout_until),
        "email_verified": user.email_verified,
        "email_verified_at": _dt(user.email_verified_at),
        "last_login_at": _dt(user.last_login_at),
        "created_at": _dt(user.created_at),
    }


def deserialize_user(data: Dict[str, Any]) -> User:
    return User(
        id=str(data["id"]),
        email=data["email"],
        username=data.get("username") or data["email"],
        password_hash=data.get("password_hash", ""),
        role=data.get("role", "viewer"),
        is_active=data.get("is_active", True),
        password_changed_at=_parse_dt(data.get("password_changed_at")),
        must_change_password=data.get("must_change_password", False),
        password_history=list(data.get("password_history") or []),
        mfa_enabled=data.get("mfa_enabled", False),
        mfa_secret=data.get("mfa_secret"),
        mfa_backup_codes=list(data.get("mfa_backup_codes") or []),
        failed_login_attempts=int(data.get("failed_login_attempts", 0)),
        is_locked=data.get("is_locked", False),
        lockout_until=_parse_dt(data.get("lockout_until")),
        email_verified=data.get("email_verified", False),
        email_verified_at=_parse_dt(data.get("email_verified_at")),
        last_login_at=_parse_dt(data.get("last_login_at")),
        created_at=_parse_dt(data.get("created_at")) or utcnow(),
    )


def serialize_session(session: Session) -> Dict[str, Any]:
    return {
        "id": session.id,
        "user_id": session.user_id,
        "access_token_hash": session.access_token_hash,
        "refresh_token_hash": session.refresh_token_hash,
        "created_at": _dt(session.created_at),
        "expires_at": _dt(session.expires_at),
        "last_activity_at": _dt(session.last_activity_at),
        "ip_address": session.ip_address,
        "user_agent": session.user_agent,
        "device_fingerprint": session.device_fingerprint,
        "revoked_at": _dt(session.revoked_at),
    }


def deserialize_session(data: Dict[str, Any]) -> Session:
    return Session(
        id=data["id"],
        user_id=data["user_id"],
        access_token_hash=data["access_token_hash"],
        refresh_token_hash=data["refresh_token_hash"],
        created_at=_parse_dt(data["created_at"]),
        expires_at=_parse_dt(data["expires_at"]),
        last_activity_at=_parse_dt(data.get("last_activity_at") or data["created_at"]),
        ip_address=data.get("ip_address"),
        user_agent=data.get("user_agent"),
        device_fingerprint=data.get("device_fingerprint"),
        revoked_at=_parse_dt(data.get("revoked_at")),
    )


def serialize_token(token: OneTimeToken, kind: str) -> Dict[str, Any]:
    return {
        "id": token.id,
        "kind": kind,
        "user_id": token.user_id,
        "token_hash": token.token_hash,
        "expires_at": _dt(token.expires_at),
        "used_at": _dt(token.used_at),
        "created_at": _dt(token.created_at),
    }


def deserialize_token(data: Dict[str, Any]) -> OneTimeToken:
    return OneTimeToken(
        id=data["id"],
        user_id=data["user_id"],
        token_hash=data["token_hash"],
        expires_at=_parse_dt(data["expires_at"]),
        used_at=_parse_dt(data.get("used_at")),
        created_at=_parse_dt(data["created_at"]),
    )


def serialize_audit_event(event: AuditEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "action": event.action,
        "resource": event.resource,
        "user_id": event.user_id,
        "resource_id": event.resource_id,
        "ip_address": event.ip_address,
        "user_agent": event.user_agent,
        "severity": event.severity,
        "details": event.details,
        "created_at": _dt(event.created_at),
    }


def deserialize_audit_event(data: Dict[str, Any]) -> AuditEvent:
    return AuditEvent(
        id=data["id"],
        action=data["action"],
        resource=data.get("resource", "user"),
        user_id=data.get("user_id"),
        resource_id=data.get("resource_id"),
        ip_address=data.get("ip_address"),
        user_agent=data.get("user_agent"),
        severity=data.get("severity", "low"),
        details=data.get("details"),
        created_at=_parse_dt(data["created_at"]),
    )
