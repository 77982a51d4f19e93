from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from autohealer.config import Settings
from autohealer.logging import get_logger
from autohealer.service.audit import AuditAction
from autohealer.service.capabilities import Capability, has_capability
from autohealer.service.errors import (
    CooldownActiveError,
    InsufficientPrivilegeError,
    InvalidOperationError,
    MfaAlreadyDisabledError,
    UserNotFoundError,
    ValidationError,
)
from autohealer.storage.common import AuthStore
from autohealer.storage.models import AuditEvent, User, utcnow

logger = get_logger(__name__)

MAX_REASON_LENGTH = 500
MAX_HISTORY_LIMIT = 100


@dataclass
class EmergencyOverrideResult:
    audit_id: str
    timestamp: datetime
    target: User
    sessions_revoked: int

    @property
    def message(self) -> str:
        return f"MFA disabled for {self.target.email}. All sessions revoked."


@dataclass
class EmergencyOverrideRecord:
    id: str
    timestamp: datetime
    admin_user_id: Optional[str]
    admin_username: str
    target_user_id: Optional[str]
    target_email: str
    target_username: str
    reason: str
    ip_address: Optional[str]


class EmergencyOverrideController:
    """Administrative MFA removal for users who lost their authenticator.

    The MFA reset, the session revocation and the audit record are written
    in a single store call. The cooldown lookup happens before that call, so
    two concurrent overrides for the same target can both pass it.
    """

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def _cooldown(self) -> timedelta:
        return timedelta(minutes=self.settings.emergency_mfa_cooldown_minutes)

    def _check_cooldown(self, target_user_id: str, now: datetime) -> None:
        last = self.store.latest_audit_event(
            AuditAction.MFA_DISABLED_EMERGENCY, target_user_id
        )
        if last is None:
            return
        elapsed = now - last.created_at
        if elapsed < self._cooldown():
            remaining = (self._cooldown() - elapsed).total_seconds() / 60
            minutes = max(1, math.ceil(remaining))
            raise CooldownActiveError(
                minutes,
                "Emergency MFA disable was recently performed for this user. "
                f"Please wait {minutes} minutes before trying again.",
            )

    @staticmethod
    def _is_emergency_admin(admin: Optional[User]) -> bool:
        return bool(
            admin
            and admin.is_active
            and has_capability(admin.role, Capability.MFA_EMERGENCY_DISABLE)
        )

    def disable_mfa_emergency(
        self,
        target_user_id: str,
        admin_user_id: str,
        reason: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> EmergencyOverrideResult:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required for emergency MFA disable")
        if len(reason) > MAX_REASON_LENGTH:
            raise ValidationError(
                f"Reason must be at most {MAX_REASON_LENGTH} characters"
            )

        if admin_user_id == target_user_id:
            raise InvalidOperationError(
                "Cannot perform emergency MFA disable on your own account"
            )

        now = utcnow()
        self._check_cooldown(target_user_id, now)

        admin = self.store.get_user(admin_user_id)
        if not self._is_emergency_admin(admin):
            raise InsufficientPrivilegeError(
                "Only active Super Admins can perform emergency MFA disable"
            )

        target = self.store.get_user(target_user_id)
        if target is None:
            raise UserNotFoundError("Target user not found")
        if not target.is_active:
            raise InvalidOperationError("Cannot disable MFA for inactive user")
        if not target.mfa_enabled:
            raise MfaAlreadyDisabledError("MFA is already disabled for this user")
        if target.role == admin.role:
            logger.warning(
                "emergency_mfa_peer_target", admin_id=admin.id, target_id=target.id
            )

        event = AuditEvent.new(
            AuditAction.MFA_DISABLED_EMERGENCY,
            user_id=admin.id,
            resource_id=target.id,
            ip_address=ip_address,
            user_agent=user_agent,
            severity="critical",
            details=self._metadata(admin, target, reason, now),
            created_at=now,
        )
        revoked = self.store.emergency_disable_mfa(target.id, audit_event=event, now=now)
        if revoked is None:
            # MFA was disabled or the account deactivated since the read above
            raise MfaAlreadyDisabledError("MFA is already disabled for this user")

        logger.warning(
            "mfa_disabled_emergency",
            admin_id=admin.id,
            target_id=target.id,
            sessions_revoked=revoked,
            audit_id=event.id,
        )
        return EmergencyOverrideResult(
            audit_id=event.id, timestamp=now, target=target, sessions_revoked=revoked
        )

    @staticmethod
    def _metadata(admin: User, target: User, reason: str, now: datetime) -> Dict[str, Any]:
        return {
            "operation": "emergency_mfa_disable",
            "target": {
                "user_id": target.id,
                "email": target.email,
                "username": target.username,
                "role": target.role,
            },
            "admin": {
                "user_id": admin.id,
                "email": admin.email,
                "username": admin.username,
                "role": admin.role,
            },
            "reason": reason,
            "timestamp": now.isoformat(),
            "actions": {
                "mfa_disabled": True,
                "secret_cleared": True,
                "backup_codes_cleared": True,
                "sessions_revoked": True,
            },
            "security": {
                "requires_reauthentication": True,
                "risk_level": "high",
            },
        }

    def can_perform_emergency_mfa_disable(self, admin_user_id: str) -> bool:
        try:
            return self._is_emergency_admin(self.store.get_user(admin_user_id))
        except Exception as exc:
            logger.warning("emergency_capability_check_failed", error=str(exc))
            return False

    def history(self, admin_user_id: str, limit: int = 50) -> List[EmergencyOverrideRecord]:
        admin = self.store.get_user(admin_user_id)
        if not (
            admin
            and admin.is_active
            and has_capability(admin.role, Capability.MFA_EMERGENCY_HISTORY)
        ):
            raise InsufficientPrivilegeError(
                "Insufficient permissions to view emergency override history"
            )
        bounded = min(max(1, limit), MAX_HISTORY_LIMIT)
        records: List[EmergencyOverrideRecord] = []
        for event in self.store.list_audit_events(
            AuditAction.MFA_DISABLED_EMERGENCY, bounded
        ):
            details = event.details or {}
            target = details.get("target") or {}
            admin_info = details.get("admin") or {}
            records.append(
                EmergencyOverrideRecord(
                    id=event.id,
                    timestamp=event.created_at,
                    admin_user_id=event.user_id,
                    admin_username=admin_info.get("username", "Unknown"),
                    target_user_id=event.resource_id,
                    target_email=target.get("email", "Unknown"),
                    target_username=target.get("username", "Unknown"),
                    reason=details.get("reason") or "No reason provided",
                    ip_address=event.ip_address,
                )
            )
        return records
