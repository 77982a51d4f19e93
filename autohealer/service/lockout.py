from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from autohealer.config import Settings
from autohealer.logging import get_logger
from autohealer.service.audit import AuditAction, AuditSink
from autohealer.service.errors import UserNotFoundError
from autohealer.storage.common import AuthStore
from autohealer.storage.models import User, utcnow

logger = get_logger(__name__)


@dataclass
class LockoutStatus:
    locked: bool
    lockout_until: Optional[datetime] = None
    failed_attempts: int = 0
    # True only for the failure that crossed the threshold
    just_locked: bool = False


class AccountLockoutGuard:
    """Failed-attempt counting and the locked/unlocked state of each account."""

    def __init__(self, store: AuthStore, settings: Settings, audit: AuditSink) -> None:
        self.store = store
        self.settings = settings
        self.audit = audit

    @property
    def threshold(self) -> int:
        return self.settings.lockout_threshold

    def record_failure(
        self,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LockoutStatus:
        now = utcnow()
        lockout_until = now + timedelta(minutes=self.settings.lockout_duration_minutes)
        user = self.store.record_failed_login(
            user_id, threshold=self.threshold, lockout_until=lockout_until
        )
        if user is None:
            return LockoutStatus(locked=False)

        # Increments are atomic, so exactly one failure observes the threshold
        just_locked = user.failed_login_attempts == self.threshold
        if just_locked:
            logger.warning(
                "account_locked",
                user_id=user.id,
                failed_attempts=user.failed_login_attempts,
                lockout_until=user.lockout_until.isoformat() if user.lockout_until else None,
            )
            self.audit.record(
                AuditAction.ACCOUNT_LOCKED,
                user_id=user.id,
                details={
                    "username": user.username,
                    "failed_attempts": user.failed_login_attempts,
                    "lockout_until": user.lockout_until.isoformat()
                    if user.lockout_until
                    else None,
                    "reason": "max_failed_attempts",
                },
                ip_address=ip_address,
                user_agent=user_agent,
                severity="high",
            )
        else:
            self.audit.record(
                AuditAction.FAILED_LOGIN_ATTEMPT,
                user_id=user.id,
                details={
                    "username": user.username,
                    "failed_attempts": user.failed_login_attempts,
                    "remaining_attempts": max(
                        0, self.threshold - user.failed_login_attempts
                    ),
                },
                ip_address=ip_address,
                user_agent=user_agent,
                severity="medium",
            )
        return LockoutStatus(
            locked=user.lock_in_effect(now),
            lockout_until=user.lockout_until,
            failed_attempts=user.failed_login_attempts,
            just_locked=just_locked,
        )

    def record_success(self, user_id: str) -> Optional[User]:
        return self.store.record_login_success(user_id, utcnow())

    def status_for(self, user: User) -> LockoutStatus:
        """Lock state for an already-loaded user, expiring a stale lock first."""
        now = utcnow()
        if user.is_locked and user.lockout_until is not None and user.lockout_until <= now:
            if self.store.expire_lockout(user.id, now):
                logger.info("account_auto_unlocked", user_id=user.id)
                self.audit.record(
                    AuditAction.ACCOUNT_UNLOCKED,
                    user_id=user.id,
                    details={"username": user.username, "unlocked_by": "auto_expire"},
                )
            return LockoutStatus(locked=False)
        return LockoutStatus(
            locked=user.lock_in_effect(now),
            lockout_until=user.lockout_until if user.is_locked else None,
            failed_attempts=user.failed_login_attempts,
        )

    def is_locked(self, user_id: str) -> LockoutStatus:
        user = self.store.get_user(user_id)
        if user is None:
            return LockoutStatus(locked=False)
        return self.status_for(user)

    def manual_lock(
        self,
        user_id: str,
        locked_by: str,
        reason: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LockoutStatus:
        current = self.is_locked(user_id)
        if current.locked:
            return current
        lockout_until = utcnow() + timedelta(hours=self.settings.manual_lock_hours)
        user = self.store.lock_user(
            user_id, lockout_until=lockout_until, failed_attempts=self.threshold
        )
        if user is None:
            raise UserNotFoundError()
        logger.warning("account_locked_manually", user_id=user_id, locked_by=locked_by)
        self.audit.record(
            AuditAction.ACCOUNT_LOCKED_MANUALLY,
            user_id=locked_by,
            resource_id=user_id,
            details={
                "username": user.username,
                "locked_by_user_id": locked_by,
                "reason": reason or "manual_lock",
                "lockout_until": lockout_until.isoformat(),
            },
            ip_address=ip_address,
            user_agent=user_agent,
            severity="high",
        )
        return LockoutStatus(
            locked=True,
            lockout_until=lockout_until,
            failed_attempts=self.threshold,
            just_locked=True,
        )

    def manual_unlock(
        self,
        user_id: str,
        unlocked_by: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LockoutStatus:
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError()
        if not user.is_locked:
            return LockoutStatus(locked=False, failed_attempts=user.failed_login_attempts)
        self.store.clear_lockout(user_id)
        logger.info("account_unlocked", user_id=user_id, unlocked_by=unlocked_by)
        self.audit.record(
            AuditAction.ACCOUNT_UNLOCKED,
            user_id=unlocked_by or user_id,
            resource_id=user_id,
            details={
                "username": user.username,
                "unlocked_by": "admin" if unlocked_by else "auto_expire",
                "unlocked_by_user_id": unlocked_by,
            },
            ip_address=ip_address,
            user_agent=user_agent,
            severity="medium",
        )
        return LockoutStatus(locked=False)

    def lockout_stats(self) -> Dict[str, int]:
        return self.store.lockout_counts(utcnow())
