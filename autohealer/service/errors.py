from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on. Authentication failures deliberately share
    messages so callers cannot tell *why* a credential was rejected.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# Credential and account state


class InvalidCredentialsError(AuthenticationError):
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials") -> None:
        super().__init__(message)


class AccountLockedError(AuthenticationError):
    error_code = "account_locked"

    def __init__(self, lockout_until: Optional[datetime] = None) -> None:
        detail = {"lockout_until": lockout_until.isoformat()} if lockout_until else {}
        super().__init__(
            "Account is temporarily locked due to multiple failed login attempts",
            detail=detail,
        )
        self.lockout_until = lockout_until


class AccountInactiveError(AuthenticationError):
    error_code = "account_inactive"

    def __init__(self, message: str = "Account is inactive") -> None:
        super().__init__(message)


class InvalidMfaTokenError(AuthenticationError):
    error_code = "invalid_mfa_token"

    def __init__(self, message: str = "Invalid MFA token") -> None:
        super().__init__(message)


# Passwords


class PolicyViolationError(ValidationError):
    error_code = "policy_violation"

    def __init__(self, reasons: Iterable[str]) -> None:
        self.reasons = list(reasons)
        super().__init__(
            "Password policy violation: " + ", ".join(self.reasons),
            detail={"reasons": self.reasons},
        )


class PasswordReusedError(ValidationError):
    error_code = "password_reused"

    def __init__(self, message: str = "Password was used recently") -> None:
        super().__init__(message)


class PasswordMismatchError(ValidationError):
    error_code = "password_mismatch"

    def __init__(self, message: str = "Password confirmation does not match") -> None:
        super().__init__(message)


class IncorrectCurrentPasswordError(AuthenticationError):
    error_code = "incorrect_current_password"

    def __init__(self, message: str = "Current password is incorrect") -> None:
        super().__init__(message)


class InvalidOrExpiredTokenError(ValidationError):
    error_code = "invalid_or_expired_token"

    def __init__(self, message: str = "Invalid or expired token") -> None:
        super().__init__(message)


# Sessions


class InvalidSessionError(AuthenticationError):
    error_code = "invalid_session"

    def __init__(self, message: str = "Invalid session") -> None:
        super().__init__(message)


class InvalidRefreshTokenError(AuthenticationError):
    error_code = "invalid_refresh_token"

    def __init__(self, message: str = "Invalid refresh token") -> None:
        super().__init__(message)


# Privilege, cooldowns and state machine misuse


class InsufficientPrivilegeError(ForbiddenError):
    error_code = "insufficient_privilege"

    def __init__(self, message: str = "Insufficient privileges for this operation") -> None:
        super().__init__(message)


class CooldownActiveError(RateLimitedError):
    error_code = "rate_limited"

    def __init__(self, minutes_remaining: int, message: Optional[str] = None) -> None:
        self.minutes_remaining = minutes_remaining
        super().__init__(
            message
            or f"Operation is rate limited; try again in {minutes_remaining} minutes",
            detail={"minutes_remaining": minutes_remaining},
        )


class InvalidOperationError(ValidationError):
    error_code = "invalid_operation"


class MfaAlreadyEnabledError(ConflictError):
    error_code = "already_enabled"

    def __init__(self, message: str = "MFA is already enabled") -> None:
        super().__init__(message)


class MfaAlreadyDisabledError(ConflictError):
    error_code = "already_disabled"

    def __init__(self, message: str = "MFA is not enabled for this user") -> None:
        super().__init__(message)


class MfaSetupNotInitiatedError(ValidationError):
    error_code = "setup_not_initiated"

    def __init__(self, message: str = "MFA setup not initiated") -> None:
        super().__init__(message)


class UserNotFoundError(NotFoundError):
    def __init__(self, message: str = "User not found") -> None:
        super().__init__(message)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "AccountInactiveError",
    "InvalidMfaTokenError",
    "PolicyViolationError",
    "PasswordReusedError",
    "PasswordMismatchError",
    "IncorrectCurrentPasswordError",
    "InvalidOrExpiredTokenError",
    "InvalidSessionError",
    "InvalidRefreshTokenError",
    "InsufficientPrivilegeError",
    "CooldownActiveError",
    "InvalidOperationError",
    "MfaAlreadyEnabledError",
    "MfaAlreadyDisabledError",
    "MfaSetupNotInitiatedError",
    "UserNotFoundError",
]
