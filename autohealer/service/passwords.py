from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from autohealer.config import Settings
from autohealer.logging import get_logger, mask_email
from autohealer.service.audit import AuditAction, AuditSink
from autohealer.service.errors import (
    IncorrectCurrentPasswordError,
    InvalidOrExpiredTokenError,
    PasswordMismatchError,
    PasswordReusedError,
    PolicyViolationError,
    ServerError,
    UserNotFoundError,
)
from autohealer.service.secrets import SecretStore
from autohealer.storage.common import AuthStore, push_password_history
from autohealer.storage.errors import StaleRecordError
from autohealer.storage.models import OneTimeToken, TokenKind, User, utcnow

logger = get_logger(__name__)

SPECIAL_CHARACTERS = "@$!%*?&"


class PasswordPolicy:
    """Complexity rules applied to every new password."""

    def __init__(self, min_length: int = 12) -> None:
        self.min_length = min_length

    def validate(self, password: str) -> List[str]:
        errors: List[str] = []
        if len(password) < self.min_length:
            errors.append(f"Password must be at least {self.min_length} characters long")
        if not re.search(r"[a-z]", password):
            errors.append("Password must contain at least one lowercase letter")
        if not re.search(r"[A-Z]", password):
            errors.append("Password must contain at least one uppercase letter")
        if not re.search(r"\d", password):
            errors.append("Password must contain at least one number")
        if not any(ch in SPECIAL_CHARACTERS for ch in password):
            errors.append(
                f"Password must contain at least one special character ({SPECIAL_CHARACTERS})"
            )
        return errors

    def enforce(self, password: str) -> None:
        errors = self.validate(password)
        if errors:
            raise PolicyViolationError(errors)


@dataclass
class IssuedToken:
    """Raw single-use token handed to the mailer; only its hash is stored."""

    user: User
    token: str
    expires_in: timedelta


class CredentialVerifier:
    """Password verification, rotation and the reset and verification grants."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        secret_store: SecretStore,
        audit: AuditSink,
        *,
        policy: Optional[PasswordPolicy] = None,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.secret_store = secret_store
        self.audit = audit
        self.policy = policy or PasswordPolicy()
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        # Unknown emails still pay for one hash comparison
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(24))

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def check_password(self, password_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def verify(self, email: str, password: str) -> Optional[User]:
        """Return the user when the password matches, otherwise None.

        A missing user and a wrong password are indistinguishable to the
        caller, and both paths run one argon2 verification.
        """
        user = self.store.get_user_by_email(email)
        if user is None:
            self.check_password(self._dummy_hash, password)
            logger.info("credential_unknown_email", email=mask_email(email))
            return None
        if not self.check_password(user.password_hash, password):
            return None
        return user

    def verify_password(self, user: User, password: str) -> bool:
        return self.check_password(user.password_hash, password)

    def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        confirm_password: str,
        *,
        current_session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        if new_password != confirm_password:
            raise PasswordMismatchError()
        self.policy.enforce(new_password)

        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError()
        if not self.check_password(user.password_hash, current_password):
            raise IncorrectCurrentPasswordError()
        recent = [user.password_hash] + user.password_history[
            : self.settings.password_history_depth
        ]
        if any(self.check_password(h, new_password) for h in recent):
            raise PasswordReusedError(
                f"Cannot reuse the current password or any of the last "
                f"{self.settings.password_history_depth} passwords"
            )

        now = utcnow()
        history = push_password_history(
            user.password_history, user.password_hash, self.settings.password_history_depth
        )
        try:
            revoked = self.store.apply_password_change(
                user.id,
                expected_hash=user.password_hash,
                password_hash=self.hash_password(new_password),
                password_history=history,
                changed_at=now,
                keep_session_id=current_session_id,
            )
        except StaleRecordError:
            # Another change landed between the read and the write
            raise IncorrectCurrentPasswordError()

        logger.info("password_changed", user_id=user.id, sessions_revoked=revoked)
        self.audit.record(
            AuditAction.PASSWORD_CHANGED,
            user_id=user.id,
            details={
                "username": user.username,
                "changed_by": "user",
                "sessions_revoked": revoked,
            },
            ip_address=ip_address,
            user_agent=user_agent,
            severity="medium",
        )
        return self.store.get_user(user.id) or user

    def request_reset(
        self,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[IssuedToken]:
        """Issue a reset token for an active account.

        Callers must respond identically whether or not a token was issued.
        """
        user = self.store.get_user_by_email(email)
        if user is None or not user.is_active:
            logger.info("password_reset_skipped", email=mask_email(email))
            return None

        raw = self.secret_store.random_hex(32)
        ttl = timedelta(minutes=self.settings.password_reset_ttl_minutes)
        token = OneTimeToken.new(user.id, self.secret_store.hash_token(raw), ttl)
        self.store.issue_one_time_token(TokenKind.PASSWORD_RESET, token)
        self.audit.record(
            AuditAction.PASSWORD_RESET_REQUESTED,
            user_id=user.id,
            details={"username": user.username, "expires_at": token.expires_at.isoformat()},
            ip_address=ip_address,
            user_agent=user_agent,
            severity="medium",
        )
        return IssuedToken(user=user, token=raw, expires_in=ttl)

    def confirm_reset(
        self,
        token: str,
        new_password: str,
        confirm_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        if new_password != confirm_password:
            raise PasswordMismatchError()
        self.policy.enforce(new_password)

        user = self.store.complete_password_reset(
            self.secret_store.hash_token(token),
            password_hash=self.hash_password(new_password),
            now=utcnow(),
        )
        if user is None:
            raise InvalidOrExpiredTokenError("Invalid or expired reset token")

        logger.info("password_reset_completed", user_id=user.id)
        self.audit.record(
            AuditAction.PASSWORD_RESET_COMPLETED,
            user_id=user.id,
            details={"username": user.username},
            ip_address=ip_address,
            user_agent=user_agent,
            severity="medium",
        )
        return user

    def request_email_verification(self, user_id: str) -> IssuedToken:
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError()
        raw = self.secret_store.random_hex(32)
        ttl = timedelta(hours=self.settings.email_verification_ttl_hours)
        token = OneTimeToken.new(user.id, self.secret_store.hash_token(raw), ttl)
        self.store.issue_one_time_token(TokenKind.EMAIL_VERIFICATION, token)
        return IssuedToken(user=user, token=raw, expires_in=ttl)

    def verify_email(
        self,
        token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        user = self.store.complete_email_verification(
            self.secret_store.hash_token(token), utcnow()
        )
        if user is None:
            raise InvalidOrExpiredTokenError("Invalid or expired verification token")
        self.audit.record(
            AuditAction.EMAIL_VERIFIED,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return user

    def resend_verification(self, email: str) -> Optional[IssuedToken]:
        user = self.store.get_user_by_email(email)
        if user is None or user.email_verified or not user.is_active:
            return None
        return self.request_email_verification(user.id)

    def generate_temporary_password(self, length: int = 16) -> str:
        if length < self.policy.min_length:
            raise ServerError("temporary password shorter than policy minimum")
        required = [
            secrets.choice(string.ascii_lowercase),
            secrets.choice(string.ascii_uppercase),
            secrets.choice(string.digits),
            secrets.choice(SPECIAL_CHARACTERS),
        ]
        alphabet = string.ascii_letters + string.digits + SPECIAL_CHARACTERS
        rest = [secrets.choice(alphabet) for _ in range(length - len(required))]
        chars = required + rest
        secrets.SystemRandom().shuffle(chars)
        return "".join(chars)
