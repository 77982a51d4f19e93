from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from autohealer.service.emergency import MAX_REASON_LENGTH

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credentials",
    "account_locked",
    "account_inactive",
    "invalid_mfa_token",
    "policy_violation",
    "password_reused",
    "password_mismatch",
    "incorrect_current_password",
    "invalid_or_expired_token",
    "invalid_session",
    "invalid_refresh_token",
    "insufficient_privilege",
    "invalid_operation",
    "already_enabled",
    "already_disabled",
    "setup_not_initiated",
})

MAX_PASSWORD_LENGTH = 128


class ErrorBody(BaseModel):
    """Error envelope body with a stable, client-branchable code."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then apply NFKC."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class _EmailBody(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_email_field(cls, value: str) -> str:
        return _validate_email(value)


# Requests


class LoginRequest(_EmailBody):
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    mfa_token: Optional[str] = Field(default=None, max_length=16)
    device_fingerprint: Optional[str] = Field(default=None, max_length=256)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class MfaVerifyRequest(BaseModel):
    token: str = Field(..., max_length=16)


class MfaDisableRequest(BaseModel):
    current_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    mfa_token: str = Field(..., max_length=16)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    confirm_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class PasswordResetRequest(_EmailBody):
    pass


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    confirm_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., max_length=256)


class ResendVerificationRequest(_EmailBody):
    pass


class LockUserRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=MAX_REASON_LENGTH)


class EmergencyMfaDisableRequest(BaseModel):
    # Emptiness and length are checked by EmergencyOverrideController
    reason: str = ""


# Responses


class UserResponse(BaseModel):
    id: str
    email: str
    username: str
    role: str
    is_active: bool
    email_verified: bool
    mfa_enabled: bool
    must_change_password: bool
    last_login_at: Optional[datetime] = None
    created_at: datetime


class AuthResponse(BaseModel):
    user: UserResponse
    mfa_required: bool = False
    session_id: Optional[str] = None
    access_token: str = ""
    refresh_token: str = ""
    token_type: str = "bearer"
    expires_in: Optional[int] = None


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class SessionResponse(BaseModel):
    id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    is_current: bool


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class MfaSetupResponse(BaseModel):
    secret: str
    qr_payload: str
    backup_codes: List[str]


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]


class LockoutStatusResponse(BaseModel):
    user_id: str
    locked: bool
    lockout_until: Optional[datetime] = None
    failed_attempts: int = 0


class EmergencyMfaDisableResponse(BaseModel):
    audit_id: str
    timestamp: datetime
    target_user_id: str
    sessions_revoked: int
    message: str


class EmergencyOverrideRecordResponse(BaseModel):
    id: str
    timestamp: datetime
    admin_user_id: Optional[str] = None
    admin_username: str
    target_user_id: Optional[str] = None
    target_email: str
    target_username: str
    reason: str
    ip_address: Optional[str] = None


class EmergencyHistoryResponse(BaseModel):
    items: List[EmergencyOverrideRecordResponse]
