from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role:
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    ENGINEER = "engineer"
    VIEWER = "viewer"

    ALL = frozenset({SUPER_ADMIN, ADMIN, ENGINEER, VIEWER})


@dataclass
class User:
    id: str
    email: str
    username: str
    password_hash: str
    role: str = Role.VIEWER
    is_active: bool = True
    password_changed_at: Optional[datetime] = None
    must_change_password: bool = False
    # Most recent first, capped by the configured history depth
    password_history: List[str] = field(default_factory=list)
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None  # Fernet token
    mfa_backup_codes: List[str] = field(default_factory=list)  # Fernet tokens
    failed_login_attempts: int = 0
    is_locked: bool = False
    lockout_until: Optional[datetime] = None
    email_verified: bool = False
    email_verified_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def lock_in_effect(self, now: datetime) -> bool:
        """True while a lock applies; a null expiry means an indefinite lock."""
        if not self.is_locked:
            return False
        return self.lockout_until is None or self.lockout_until > now


@dataclass
class Session:
    id: str
    user_id: str
    access_token_hash: str
    refresh_token_hash: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        *,
        ttl_minutes: int,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_fingerprint: Optional[str] = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            access_token_hash="",
            refresh_token_hash="",
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            last_activity_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
            device_fingerprint=device_fingerprint,
        )

    def is_usable(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now


@dataclass
class OneTimeToken:
    """Single-use grant; only the hash of the raw token is ever stored."""

    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: str, token_hash: str, ttl: timedelta) -> "OneTimeToken":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=utcnow() + ttl,
        )

    def is_redeemable(self, now: datetime) -> bool:
        return self.used_at is None and self.expires_at > now


class TokenKind:
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"


@dataclass
class AuditEvent:
    id: str
    action: str
    resource: str = "user"
    user_id: Optional[str] = None
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    severity: str = "low"
    details: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, action: str, **kwargs) -> "AuditEvent":
        return cls(id=str(uuid.uuid4()), action=action, **kwargs)
