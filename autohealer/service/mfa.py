from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import string
import time
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import quote, urlencode

from autohealer.config import Settings
from autohealer.logging import get_logger
from autohealer.service.audit import AuditAction, AuditSink
from autohealer.service.errors import (
    InvalidMfaTokenError,
    MfaAlreadyDisabledError,
    MfaAlreadyEnabledError,
    MfaSetupNotInitiatedError,
    UserNotFoundError,
)
from autohealer.service.secrets import SecretStore
from autohealer.storage.common import AuthStore
from autohealer.storage.models import User

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
BACKUP_CODE_LENGTH = 8
_BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits


@dataclass
class MfaSetup:
    secret: str
    qr_payload: str
    backup_codes: List[str] = field(default_factory=list)


@dataclass
class BackupCodeUse:
    remaining: int
    low_watermark: int

    @property
    def low_on_codes(self) -> bool:
        return self.remaining < self.low_watermark


@dataclass
class MfaVerification:
    method: str  # "totp" or "backup_code"
    backup: Optional[BackupCodeUse] = None


def normalize_backup_code(code: str) -> str:
    return code.strip().upper()


class MfaEngine:
    """TOTP secrets, backup codes and the per-user MFA setup state machine.

    A user moves from not set up, to pending (secret stored, MFA still
    disabled), to enabled once one valid TOTP confirms the authenticator.
    Secrets and backup codes are only ever persisted encrypted.
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

    # primitives
    def generate_secret(self) -> str:
        # 20 bytes encode to exactly 32 base32 characters without padding
        return base64.b32encode(secrets.token_bytes(20)).decode("ascii")

    def provisioning_uri(self, email: str, secret: str) -> str:
        issuer = self.settings.mfa_issuer
        label = quote(f"{issuer}:{email}")
        params = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL,
            }
        )
        return f"otpauth://totp/{label}?{params}"

    def generate_totp(self, secret: str, timestamp: Optional[float] = None) -> str:
        padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, casefold=True)
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return ""
        now = time.time() if timestamp is None else timestamp
        counter = int(now // TOTP_INTERVAL).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**TOTP_DIGITS
        )
        return str(code_int).zfill(TOTP_DIGITS)

    def verify_totp(
        self,
        secret: str,
        token: str,
        *,
        window: int = 1,
        timestamp: Optional[float] = None,
    ) -> bool:
        token = (token or "").strip()
        if len(token) != TOTP_DIGITS or not (token.isascii() and token.isdigit()):
            return False
        now = time.time() if timestamp is None else timestamp
        for step in range(-window, window + 1):
            generated = self.generate_totp(secret, now + step * TOTP_INTERVAL)
            if generated and hmac.compare_digest(generated, token):
                return True
        return False

    def generate_backup_codes(self, count: Optional[int] = None) -> List[str]:
        total = count if count is not None else self.settings.backup_code_count
        codes: List[str] = []
        seen = set()
        while len(codes) < total:
            code = "".join(
                secrets.choice(_BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH)
            )
            if code in seen:
                continue
            seen.add(code)
            codes.append(code)
        return codes

    def _seal_codes(self, codes: List[str]) -> List[str]:
        return [self.secret_store.encrypt(code) for code in codes]

    def consume_backup_code(self, user_id: str, code: str) -> Optional[BackupCodeUse]:
        """Remove ``code`` from the user's list; None when it does not match.

        The match and the removal happen in one store call, so a code can be
        redeemed at most once even under concurrent requests.
        """
        wanted = normalize_backup_code(code)
        if len(wanted) != BACKUP_CODE_LENGTH:
            return None

        def _matches(sealed: str) -> bool:
            return self.secret_store.constant_time_equals(
                self.secret_store.decrypt(sealed), wanted
            )

        remaining = self.store.consume_backup_code(user_id, _matches)
        if remaining is None:
            return None
        self.audit.record(
            AuditAction.BACKUP_CODE_USED,
            user_id=user_id,
            details={"remaining_codes": remaining},
            severity="medium",
        )
        return BackupCodeUse(
            remaining=remaining, low_watermark=self.settings.backup_code_low_watermark
        )

    def verify_user_token(self, user: User, token: str) -> Optional[MfaVerification]:
        """Accept a current TOTP or, failing that, an unused backup code."""
        if not user.mfa_secret:
            return None
        secret = self.secret_store.decrypt(user.mfa_secret)
        if self.verify_totp(secret, token):
            return MfaVerification(method="totp")
        backup = self.consume_backup_code(user.id, token)
        if backup is not None:
            return MfaVerification(method="backup_code", backup=backup)
        return None

    # state machine
    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError()
        return user

    def begin_setup(self, user_id: str) -> MfaSetup:
        user = self._require_user(user_id)
        if user.mfa_enabled:
            raise MfaAlreadyEnabledError()
        secret = self.generate_secret()
        codes = self.generate_backup_codes()
        updated = self.store.begin_mfa_setup(
            user.id,
            secret=self.secret_store.encrypt(secret),
            backup_codes=self._seal_codes(codes),
        )
        if updated is None:
            raise MfaAlreadyEnabledError()
        self.audit.record(AuditAction.MFA_SETUP_INITIATED, user_id=user.id)
        return MfaSetup(
            secret=secret,
            qr_payload=self.provisioning_uri(user.email, secret),
            backup_codes=codes,
        )

    def confirm_setup(self, user_id: str, token: str) -> User:
        user = self._require_user(user_id)
        if user.mfa_enabled:
            raise MfaAlreadyEnabledError()
        if not user.mfa_secret:
            raise MfaSetupNotInitiatedError()
        secret = self.secret_store.decrypt(user.mfa_secret)
        if not self.verify_totp(secret, token):
            raise InvalidMfaTokenError()
        enabled = self.store.enable_mfa(user.id)
        if enabled is None:
            raise MfaAlreadyEnabledError()
        logger.info("mfa_enabled", user_id=user.id)
        self.audit.record(AuditAction.MFA_ENABLED, user_id=user.id, severity="medium")
        return enabled

    def disable(self, user_id: str) -> User:
        disabled = self.store.disable_mfa(user_id)
        if disabled is None:
            self._require_user(user_id)
            raise MfaAlreadyDisabledError()
        logger.info("mfa_disabled", user_id=user_id)
        self.audit.record(AuditAction.MFA_DISABLED, user_id=user_id, severity="high")
        return disabled

    def regenerate_backup_codes(self, user_id: str) -> List[str]:
        codes = self.generate_backup_codes()
        updated = self.store.replace_backup_codes(user_id, self._seal_codes(codes))
        if updated is None:
            self._require_user(user_id)
            raise MfaAlreadyDisabledError()
        self.audit.record(
            AuditAction.BACKUP_CODES_REGENERATED,
            user_id=user_id,
            details={"count": len(codes)},
            severity="medium",
        )
        return codes
