from __future__ import annotations

from typing import Any, Dict, Optional

from autohealer.logging import get_logger
from autohealer.storage.common import AuthStore
from autohealer.storage.models import AuditEvent

logger = get_logger(__name__)


class AuditAction:
    LOGIN_SUCCESSFUL = "login_successful"
    LOGIN_FAILED = "login_failed"
    LOGIN_BLOCKED = "login_blocked"
    FAILED_LOGIN_ATTEMPT = "failed_login_attempt"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"
    ACCOUNT_LOCKED_MANUALLY = "account_locked_manually"
    SESSION_CREATED = "session_created"
    TOKEN_REFRESHED = "token_refreshed"
    SESSION_REVOKED = "session_revoked"
    ALL_SESSIONS_REVOKED = "all_sessions_revoked"
    PASSWORD_CHANGED = "password_changed"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET_COMPLETED = "password_reset_completed"
    MFA_SETUP_INITIATED = "mfa_setup_initiated"
    MFA_ENABLED = "mfa_enabled"
    MFA_DISABLED = "mfa_disabled"
    BACKUP_CODE_USED = "backup_code_used"
    BACKUP_CODES_REGENERATED = "backup_codes_regenerated"
    EMAIL_VERIFIED = "email_verified"
    MFA_DISABLED_EMERGENCY = "mfa_disabled_emergency"


class AuditSink:
    """Write-only recorder for security events.

    Recording is best-effort: a store failure is logged and dropped so that
    the operation being audited still completes.
    """

    def __init__(self, store: AuthStore) -> None:
        self.store = store

    def record(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        severity: str = "low",
        resource: str = "user",
    ) -> Optional[AuditEvent]:
        event = AuditEvent.new(
            action,
            resource=resource,
            user_id=user_id,
            resource_id=resource_id or user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            severity=severity,
            details=details,
        )
        try:
            self.store.record_audit_event(event)
        except Exception as exc:
            logger.error(
                "audit_record_failed",
                action=action,
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        return event
