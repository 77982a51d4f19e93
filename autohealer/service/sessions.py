from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from autohealer.config import Settings
from autohealer.logging import get_logger
from autohealer.service.audit import AuditAction, AuditSink
from autohealer.service.capabilities import Capability, has_capability
from autohealer.service.errors import (
    InsufficientPrivilegeError,
    InvalidRefreshTokenError,
    InvalidSessionError,
    NotFoundError,
)
from autohealer.service.secrets import SecretStore
from autohealer.storage.common import AuthStore
from autohealer.storage.models import Session, User, utcnow

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


@dataclass
class IssuedSession:
    session_id: str
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int


@dataclass
class AuthenticatedSession:
    user: User
    session: Session


@dataclass
class SessionView:
    id: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    device_fingerprint: Optional[str]
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    is_current: bool


class SessionManager:
    """Issues, validates, rotates and revokes sessions.

    Raw access and refresh tokens are returned to the caller once and never
    stored; the session row only carries their SHA-256 hashes. Every
    validation failure collapses to one error per token kind.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        secret_store: SecretStore,
        audit: AuditSink,
    ) -> None:
        self.store = store
        self.settings = settings
        self.secret_store = secret_store
        self.audit = audit

    # token encoding
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: Dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str, expected_type: str) -> Optional[Dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        if payload.get("type") != expected_type:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time():
            return None
        return payload

    def _mint(self, user: User, session_id: str, token_type: str, ttl_minutes: int) -> str:
        now = int(time.time())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "email": user.email,
            "username": user.username,
            "role": user.role,
            "session_id": session_id,
            "type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + ttl_minutes * 60,
        }
        return self._encode_jwt(payload)

    def _mint_pair(self, user: User, session_id: str) -> TokenPair:
        return TokenPair(
            access_token=self._mint(
                user, session_id, ACCESS_TOKEN_TYPE, self.settings.access_token_ttl_minutes
            ),
            refresh_token=self._mint(
                user, session_id, REFRESH_TOKEN_TYPE, self.settings.refresh_token_ttl_minutes
            ),
            expires_in=self.settings.access_token_ttl_minutes * 60,
        )

    @staticmethod
    def _user_usable(user: Optional[User], now: datetime) -> bool:
        return bool(user and user.is_active and not user.lock_in_effect(now))

    # lifecycle
    def create_session(
        self,
        user: User,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_fingerprint: Optional[str] = None,
    ) -> IssuedSession:
        session = Session.new(
            user.id,
            ttl_minutes=self.settings.session_ttl_minutes,
            ip_address=ip_address,
            user_agent=user_agent,
            device_fingerprint=device_fingerprint,
        )
        pair = self._mint_pair(user, session.id)
        session.access_token_hash = self.secret_store.hash_token(pair.access_token)
        session.refresh_token_hash = self.secret_store.hash_token(pair.refresh_token)
        self.store.create_session(session)
        logger.info("session_created", user_id=user.id, session_id=session.id)
        self.audit.record(
            AuditAction.SESSION_CREATED,
            user_id=user.id,
            resource="session",
            resource_id=session.id,
            details={"device_fingerprint": device_fingerprint},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return IssuedSession(
            session_id=session.id,
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
        )

    def validate(self, access_token: str) -> AuthenticatedSession:
        payload = self._decode_jwt(access_token, ACCESS_TOKEN_TYPE)
        if payload is None:
            raise InvalidSessionError()
        now = utcnow()
        token_hash = self.secret_store.hash_token(access_token)
        session = self.store.get_session_by_access_hash(token_hash)
        if (
            session is None
            or session.id != payload.get("session_id")
            or not session.is_usable(now)
        ):
            raise InvalidSessionError()
        user = self.store.get_user(session.user_id)
        if not self._user_usable(user, now):
            raise InvalidSessionError()
        # Conditional on the hash, so a concurrent rotation wins
        if not self.store.touch_session(session.id, token_hash, now):
            raise InvalidSessionError()
        session.last_activity_at = now
        return AuthenticatedSession(user=user, session=session)

    def refresh(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        payload = self._decode_jwt(refresh_token, REFRESH_TOKEN_TYPE)
        if payload is None:
            raise InvalidRefreshTokenError()
        now = utcnow()
        old_hash = self.secret_store.hash_token(refresh_token)
        session = self.store.get_session_by_refresh_hash(old_hash)
        if (
            session is None
            or session.id != payload.get("session_id")
            or not session.is_usable(now)
        ):
            raise InvalidRefreshTokenError()
        user = self.store.get_user(session.user_id)
        if not self._user_usable(user, now):
            raise InvalidRefreshTokenError()

        pair = self._mint_pair(user, session.id)
        rotated = self.store.rotate_session_tokens(
            session.id,
            expected_refresh_hash=old_hash,
            access_token_hash=self.secret_store.hash_token(pair.access_token),
            refresh_token_hash=self.secret_store.hash_token(pair.refresh_token),
            now=now,
        )
        if not rotated:
            logger.warning("refresh_rotation_lost", session_id=session.id)
            raise InvalidRefreshTokenError()
        self.audit.record(
            AuditAction.TOKEN_REFRESHED,
            user_id=user.id,
            resource="session",
            resource_id=session.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return pair

    def _authorize(self, owner_id: str, requested_by: User) -> None:
        if owner_id != requested_by.id and not has_capability(
            requested_by.role, Capability.SESSION_REVOKE_ANY
        ):
            raise InsufficientPrivilegeError()

    def revoke(self, session_id: str, requested_by: User) -> bool:
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFoundError("Session not found")
        self._authorize(session.user_id, requested_by)
        revoked = self.store.revoke_session(session_id, utcnow())
        if revoked:
            logger.info(
                "session_revoked", session_id=session_id, revoked_by=requested_by.id
            )
            self.audit.record(
                AuditAction.SESSION_REVOKED,
                user_id=requested_by.id,
                resource="session",
                resource_id=session_id,
                details={"session_owner": session.user_id},
            )
        return revoked

    def revoke_all(
        self,
        user_id: str,
        requested_by: User,
        *,
        except_session_id: Optional[str] = None,
    ) -> int:
        self._authorize(user_id, requested_by)
        count = self.store.revoke_user_sessions(
            user_id, utcnow(), except_session_id=except_session_id
        )
        logger.info("all_sessions_revoked", user_id=user_id, count=count)
        self.audit.record(
            AuditAction.ALL_SESSIONS_REVOKED,
            user_id=requested_by.id,
            resource_id=user_id,
            details={"revoked_count": count, "kept_session_id": except_session_id},
            severity="medium",
        )
        return count

    def list_user_sessions(
        self, user_id: str, current_session_id: Optional[str] = None
    ) -> List[SessionView]:
        return [
            SessionView(
                id=s.id,
                ip_address=s.ip_address,
                user_agent=s.user_agent,
                device_fingerprint=s.device_fingerprint,
                created_at=s.created_at,
                last_activity_at=s.last_activity_at,
                expires_at=s.expires_at,
                is_current=s.id == current_session_id,
            )
            for s in self.store.list_active_sessions(user_id, utcnow())
        ]

    def cleanup_expired(self) -> int:
        """Delete expired and revoked rows; safe to run concurrently or to skip."""
        removed = self.store.delete_expired_sessions(utcnow())
        if removed:
            logger.info("sessions_cleaned_up", removed=removed)
        return removed

    def session_stats(self) -> Dict[str, int]:
        return self.store.session_counts(utcnow())
