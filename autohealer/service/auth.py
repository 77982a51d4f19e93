from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from autohealer.config import Settings
from autohealer.logging import get_logger, mask_email
from autohealer.service.audit import AuditAction, AuditSink
from autohealer.service.email import EmailService
from autohealer.service.emergency import (
    EmergencyOverrideController,
    EmergencyOverrideRecord,
    EmergencyOverrideResult,
)
from autohealer.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    IncorrectCurrentPasswordError,
    InvalidCredentialsError,
    InvalidMfaTokenError,
    MfaAlreadyDisabledError,
    UserNotFoundError,
)
from autohealer.service.lockout import AccountLockoutGuard, LockoutStatus
from autohealer.service.mfa import BackupCodeUse, MfaEngine, MfaSetup
from autohealer.service.passwords import CredentialVerifier
from autohealer.service.sessions import (
    AuthenticatedSession,
    SessionManager,
    SessionView,
    TokenPair,
)
from autohealer.storage.common import AuthStore
from autohealer.storage.models import User

logger = get_logger(__name__)


@dataclass
class RequestContext:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None


@dataclass
class LoginSuccess:
    user: User
    session_id: str
    access_token: str
    refresh_token: str
    expires_in: int
    mfa_used: bool = False


@dataclass
class MfaRequired:
    """Password accepted, second factor still needed; no session exists yet."""

    user: User


LoginResult = Union[LoginSuccess, MfaRequired]


class AuthOrchestrator:
    """Login, logout, password and MFA use cases composed from the components.

    Outbound mail is best-effort: it runs on a worker thread and any failure
    is logged without affecting the result of the primary operation.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        credentials: CredentialVerifier,
        mfa: MfaEngine,
        lockout: AccountLockoutGuard,
        sessions: SessionManager,
        emergency: EmergencyOverrideController,
        audit: AuditSink,
        email: EmailService,
    ) -> None:
        self.store = store
        self.settings = settings
        self.credentials = credentials
        self.mfa = mfa
        self.lockout = lockout
        self.sessions = sessions
        self.emergency = emergency
        self.audit = audit
        self.email = email

    async def _notify(self, kind: str, send: Callable[..., bool], *args: Any, **kwargs: Any) -> None:
        try:
            sent = await asyncio.to_thread(send, *args, **kwargs)
        except Exception as exc:
            logger.warning(
                "notification_failed",
                kind=kind,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not sent:
            logger.warning("notification_not_sent", kind=kind)

    async def _warn_if_low_on_codes(self, user: User, backup: Optional[BackupCodeUse]) -> None:
        if backup is not None and backup.low_on_codes:
            logger.info(
                "backup_codes_low", user_id=user.id, remaining=backup.remaining
            )
            await self._notify(
                "backup_codes_low",
                self.email.send_backup_codes_low,
                user.email,
                backup.remaining,
            )

    # login and sessions
    async def login(
        self,
        email: str,
        password: str,
        mfa_token: Optional[str] = None,
        *,
        context: Optional[RequestContext] = None,
    ) -> LoginResult:
        ctx = context or RequestContext()
        user = self.store.get_user_by_email(email)
        if user is None:
            # Runs the dummy-hash comparison so timing matches a wrong password
            self.credentials.verify(email, password)
            logger.info("login_failed", reason="user_not_found", email=mask_email(email))
            self.audit.record(
                AuditAction.LOGIN_FAILED,
                details={"email": mask_email(email), "reason": "user_not_found"},
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                severity="medium",
            )
            raise InvalidCredentialsError()

        status = self.lockout.status_for(user)
        if status.locked:
            self.audit.record(
                AuditAction.LOGIN_BLOCKED,
                user_id=user.id,
                details={
                    "username": user.username,
                    "reason": "account_locked",
                    "lockout_until": status.lockout_until.isoformat()
                    if status.lockout_until
                    else None,
                },
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                severity="medium",
            )
            raise AccountLockedError(status.lockout_until)

        if not user.is_active:
            self.audit.record(
                AuditAction.LOGIN_BLOCKED,
                user_id=user.id,
                details={"username": user.username, "reason": "account_inactive"},
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                severity="medium",
            )
            raise AccountInactiveError()

        if not self.credentials.verify_password(user, password):
            failure = self.lockout.record_failure(
                user.id, ip_address=ctx.ip_address, user_agent=ctx.user_agent
            )
            logger.info(
                "login_failed",
                reason="invalid_password",
                user_id=user.id,
                failed_attempts=failure.failed_attempts,
            )
            self.audit.record(
                AuditAction.LOGIN_FAILED,
                user_id=user.id,
                details={"username": user.username, "reason": "invalid_password"},
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                severity="medium",
            )
            if failure.just_locked:
                await self._notify(
                    "account_locked",
                    self.email.send_account_locked,
                    user.email,
                    failure.lockout_until,
                )
            raise InvalidCredentialsError()

        mfa_used = False
        if user.mfa_enabled:
            if not mfa_token:
                logger.info("login_mfa_required", user_id=user.id)
                return MfaRequired(user=user)
            verification = self.mfa.verify_user_token(user, mfa_token)
            if verification is None:
                self.audit.record(
                    AuditAction.LOGIN_FAILED,
                    user_id=user.id,
                    details={"username": user.username, "reason": "invalid_mfa_token"},
                    ip_address=ctx.ip_address,
                    user_agent=ctx.user_agent,
                    severity="medium",
                )
                raise InvalidMfaTokenError()
            mfa_used = True
            await self._warn_if_low_on_codes(user, verification.backup)

        refreshed = self.lockout.record_success(user.id) or user
        issued = self.sessions.create_session(
            refreshed,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            device_fingerprint=ctx.device_fingerprint,
        )
        logger.info("login_successful", user_id=user.id, session_id=issued.session_id)
        self.audit.record(
            AuditAction.LOGIN_SUCCESSFUL,
            user_id=user.id,
            details={
                "username": user.username,
                "session_id": issued.session_id,
                "mfa_used": mfa_used,
            },
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        )
        return LoginSuccess(
            user=refreshed,
            session_id=issued.session_id,
            access_token=issued.access_token,
            refresh_token=issued.refresh_token,
            expires_in=issued.expires_in,
            mfa_used=mfa_used,
        )

    async def authenticate(self, access_token: str) -> AuthenticatedSession:
        return self.sessions.validate(access_token)

    async def refresh(
        self, refresh_token: str, *, context: Optional[RequestContext] = None
    ) -> TokenPair:
        ctx = context or RequestContext()
        return self.sessions.refresh(
            refresh_token, ip_address=ctx.ip_address, user_agent=ctx.user_agent
        )

    async def logout(self, auth: AuthenticatedSession) -> bool:
        return self.sessions.revoke(auth.session.id, auth.user)

    async def logout_all(self, auth: AuthenticatedSession) -> int:
        return self.sessions.revoke_all(
            auth.user.id, auth.user, except_session_id=auth.session.id
        )

    async def list_sessions(self, auth: AuthenticatedSession) -> List[SessionView]:
        return self.sessions.list_user_sessions(auth.user.id, auth.session.id)

    async def revoke_session(self, auth: AuthenticatedSession, session_id: str) -> bool:
        return self.sessions.revoke(session_id, auth.user)

    # passwords
    async def change_password(
        self,
        auth: AuthenticatedSession,
        current_password: str,
        new_password: str,
        confirm_password: str,
        *,
        context: Optional[RequestContext] = None,
    ) -> User:
        ctx = context or RequestContext()
        user = self.credentials.change_password(
            auth.user.id,
            current_password,
            new_password,
            confirm_password,
            current_session_id=auth.session.id,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        )
        await self._notify("password_changed", self.email.send_password_changed, user.email)
        return user

    async def request_password_reset(
        self, email: str, *, context: Optional[RequestContext] = None
    ) -> None:
        ctx = context or RequestContext()
        issued = self.credentials.request_reset(
            email, ip_address=ctx.ip_address, user_agent=ctx.user_agent
        )
        if issued is None:
            return
        await self._notify(
            "password_reset",
            self.email.send_password_reset,
            issued.user.email,
            issued.token,
            int(issued.expires_in.total_seconds() // 60),
        )

    async def confirm_password_reset(
        self,
        token: str,
        new_password: str,
        confirm_password: str,
        *,
        context: Optional[RequestContext] = None,
    ) -> User:
        ctx = context or RequestContext()
        return self.credentials.confirm_reset(
            token,
            new_password,
            confirm_password,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        )

    # email verification
    async def send_verification(self, user_id: str) -> None:
        issued = self.credentials.request_email_verification(user_id)
        await self._notify(
            "email_verification",
            self.email.send_email_verification,
            issued.user.email,
            issued.token,
            int(issued.expires_in.total_seconds() // 3600),
        )

    async def verify_email(
        self, token: str, *, context: Optional[RequestContext] = None
    ) -> User:
        ctx = context or RequestContext()
        return self.credentials.verify_email(
            token, ip_address=ctx.ip_address, user_agent=ctx.user_agent
        )

    async def resend_verification(self, email: str) -> None:
        issued = self.credentials.resend_verification(email)
        if issued is None:
            return
        await self._notify(
            "email_verification",
            self.email.send_email_verification,
            issued.user.email,
            issued.token,
            int(issued.expires_in.total_seconds() // 3600),
        )

    # mfa
    async def setup_mfa(self, auth: AuthenticatedSession) -> MfaSetup:
        return self.mfa.begin_setup(auth.user.id)

    async def verify_mfa(self, auth: AuthenticatedSession, token: str) -> User:
        user = self.mfa.confirm_setup(auth.user.id, token)
        await self._notify("mfa_enabled", self.email.send_mfa_enabled, user.email)
        return user

    async def disable_mfa(
        self, auth: AuthenticatedSession, current_password: str, mfa_token: str
    ) -> User:
        user = self.store.get_user(auth.user.id)
        if user is None:
            raise UserNotFoundError()
        if not user.mfa_enabled:
            raise MfaAlreadyDisabledError()
        if not self.credentials.verify_password(user, current_password):
            raise IncorrectCurrentPasswordError()
        verification = self.mfa.verify_user_token(user, mfa_token)
        if verification is None:
            raise InvalidMfaTokenError()
        disabled = self.mfa.disable(user.id)
        await self._notify("mfa_disabled", self.email.send_mfa_disabled, user.email)
        return disabled

    async def regenerate_backup_codes(self, auth: AuthenticatedSession) -> List[str]:
        codes = self.mfa.regenerate_backup_codes(auth.user.id)
        await self._notify(
            "backup_codes_regenerated",
            self.email.send_backup_codes_regenerated,
            auth.user.email,
        )
        return codes

    # administration
    async def lock_account(
        self,
        user_id: str,
        admin: User,
        reason: Optional[str] = None,
        *,
        context: Optional[RequestContext] = None,
    ) -> LockoutStatus:
        ctx = context or RequestContext()
        status = self.lockout.manual_lock(
            user_id,
            admin.id,
            reason,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        )
        if status.just_locked:
            target = self.store.get_user(user_id)
            if target is not None:
                await self._notify(
                    "account_locked",
                    self.email.send_account_locked,
                    target.email,
                    status.lockout_until,
                )
        return status

    async def unlock_account(
        self, user_id: str, admin: User, *, context: Optional[RequestContext] = None
    ) -> LockoutStatus:
        ctx = context or RequestContext()
        return self.lockout.manual_unlock(
            user_id, admin.id, ip_address=ctx.ip_address, user_agent=ctx.user_agent
        )

    async def lockout_stats(self) -> Dict[str, int]:
        stats = dict(self.lockout.lockout_stats())
        stats.update({f"sessions_{k}": v for k, v in self.sessions.session_stats().items()})
        return stats

    async def emergency_disable_mfa(
        self,
        target_user_id: str,
        admin: User,
        reason: str,
        *,
        context: Optional[RequestContext] = None,
    ) -> EmergencyOverrideResult:
        ctx = context or RequestContext()
        result = self.emergency.disable_mfa_emergency(
            target_user_id,
            admin.id,
            reason,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        )
        await self._notify(
            "mfa_disabled",
            self.email.send_mfa_disabled,
            result.target.email,
            by_administrator=True,
        )
        return result

    async def emergency_history(
        self, admin: User, limit: int = 50
    ) -> List[EmergencyOverrideRecord]:
        return self.emergency.history(admin.id, limit)

    async def can_emergency_disable(self, admin: User) -> bool:
        return self.emergency.can_perform_emergency_mfa_disable(admin.id)
