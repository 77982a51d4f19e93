from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, Response

from autohealer.api.guards import get_current_session, require_capability
from autohealer.api.schemas import (
    AuthResponse,
    BackupCodesResponse,
    EmailVerificationRequest,
    EmergencyHistoryResponse,
    EmergencyMfaDisableRequest,
    EmergencyMfaDisableResponse,
    EmergencyOverrideRecordResponse,
    Envelope,
    LockoutStatusResponse,
    LockUserRequest,
    LoginRequest,
    MfaDisableRequest,
    MfaSetupResponse,
    MfaVerifyRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ResendVerificationRequest,
    SessionListResponse,
    SessionResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    UserResponse,
)
from autohealer.logging import get_logger
from autohealer.service.auth import MfaRequired, RequestContext
from autohealer.service.lockout import LockoutStatus
from autohealer.service.runtime import check_rate_limit, get_runtime
from autohealer.service.sessions import AuthenticatedSession
from autohealer.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict[str, str]] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one token for ``key`` or raise a 429 envelope.

    Args:
        runtime: Application runtime context
        key: Rate limit key (e.g., "login:{email}")
        limit: Maximum requests allowed in window
        window_seconds: Rate limit window in seconds
        response: Optional response to add rate limit headers to
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)

    if response is not None:
        info.apply_headers(response)

    if not allowed:
        logger.warning("rate_limit_exceeded", key_kind=key.split(":", 1)[0])
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            headers={"Retry-After": str(max(1, reset_seconds))},
        )

    return info


def _request_context(request: Request, device_fingerprint: Optional[str] = None) -> RequestContext:
    return RequestContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        device_fingerprint=device_fingerprint,
    )


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        username=user.username,
        role=user.role,
        is_active=user.is_active,
        email_verified=user.email_verified,
        mfa_enabled=user.mfa_enabled,
        must_change_password=user.must_change_password,
        last_login_at=user.last_login_at,
        created_at=user.created_at,
    )


def _lockout_to_response(user_id: str, status: LockoutStatus) -> LockoutStatusResponse:
    return LockoutStatusResponse(
        user_id=user_id,
        locked=status.locked,
        lockout_until=status.lockout_until,
        failed_attempts=status.failed_attempts,
    )


# Authentication


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password, plus a second factor when enabled.

    When MFA is enabled and no token is supplied the response carries
    ``mfa_required=true`` with empty tokens; no session is created.

    Raises:
        401: invalid credentials, locked or inactive account, bad MFA token
        429: rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.login(
        body.email,
        body.password,
        body.mfa_token,
        context=_request_context(request, body.device_fingerprint),
    )
    if isinstance(result, MfaRequired):
        return Envelope(
            status="ok",
            data=AuthResponse(user=_user_to_response(result.user), mfa_required=True),
        )
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_to_response(result.user),
            session_id=result.session_id,
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_in=result.expires_in,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    pair = await runtime.auth.refresh(body.refresh_token, context=_request_context(request))
    return Envelope(
        status="ok",
        data=TokenPairResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(auth: AuthenticatedSession = Depends(get_current_session)):
    runtime = get_runtime()
    await runtime.auth.logout(auth)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(auth: AuthenticatedSession = Depends(get_current_session)):
    """Revoke every other session of the caller; the current one stays valid."""
    runtime = get_runtime()
    count = await runtime.auth.logout_all(auth)
    return Envelope(status="ok", data={"revoked_count": count})


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(auth: AuthenticatedSession = Depends(get_current_session)):
    runtime = get_runtime()
    views = await runtime.auth.list_sessions(auth)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[
                SessionResponse(
                    id=v.id,
                    ip_address=v.ip_address,
                    user_agent=v.user_agent,
                    device_fingerprint=v.device_fingerprint,
                    created_at=v.created_at,
                    last_activity_at=v.last_activity_at,
                    expires_at=v.expires_at,
                    is_current=v.is_current,
                )
                for v in views
            ]
        ),
    )


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    session_id: str = Path(..., min_length=1, max_length=64),
    auth: AuthenticatedSession = Depends(get_current_session),
):
    runtime = get_runtime()
    revoked = await runtime.auth.revoke_session(auth, session_id)
    return Envelope(status="ok", data={"session_id": session_id, "revoked": revoked})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(auth: AuthenticatedSession = Depends(get_current_session)):
    return Envelope(status="ok", data=_user_to_response(auth.user))


# MFA


@router.post("/auth/mfa/setup", response_model=Envelope, tags=["mfa"])
async def setup_mfa(auth: AuthenticatedSession = Depends(get_current_session)):
    """Generate a pending secret and backup codes; MFA stays off until verified."""
    runtime = get_runtime()
    setup = await runtime.auth.setup_mfa(auth)
    return Envelope(
        status="ok",
        data=MfaSetupResponse(
            secret=setup.secret,
            qr_payload=setup.qr_payload,
            backup_codes=setup.backup_codes,
        ),
    )


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["mfa"])
async def verify_mfa(
    body: MfaVerifyRequest, auth: AuthenticatedSession = Depends(get_current_session)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"mfa:verify:{auth.user.id}", limit=5, window_seconds=300
    )
    user = await runtime.auth.verify_mfa(auth, body.token)
    return Envelope(status="ok", data=_user_to_response(user))


@router.post("/auth/mfa/disable", response_model=Envelope, tags=["mfa"])
async def disable_mfa(
    body: MfaDisableRequest, auth: AuthenticatedSession = Depends(get_current_session)
):
    """Disable MFA; requires the current password and a TOTP or backup code."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"mfa:disable:{auth.user.id}", limit=5, window_seconds=300
    )
    user = await runtime.auth.disable_mfa(auth, body.current_password, body.mfa_token)
    return Envelope(status="ok", data=_user_to_response(user))


@router.post("/auth/mfa/backup-codes/regenerate", response_model=Envelope, tags=["mfa"])
async def regenerate_backup_codes(auth: AuthenticatedSession = Depends(get_current_session)):
    runtime = get_runtime()
    codes = await runtime.auth.regenerate_backup_codes(auth)
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


# Passwords


@router.post("/auth/password/change", response_model=Envelope, tags=["password"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    auth: AuthenticatedSession = Depends(get_current_session),
):
    """Change the caller's password; every other session is revoked."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"password:change:{auth.user.id}", limit=5, window_seconds=300
    )
    await runtime.auth.change_password(
        auth,
        body.current_password,
        body.new_password,
        body.confirm_password,
        context=_request_context(request),
    )
    return Envelope(status="ok", data={"status": "changed"})


@router.post("/auth/password/reset/request", response_model=Envelope, tags=["password"])
async def request_reset(body: PasswordResetRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    await runtime.auth.request_password_reset(body.email, context=_request_context(request))
    # Same response whether or not the email exists
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/password/reset/confirm", response_model=Envelope, tags=["password"])
async def confirm_reset(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"reset:confirm:{_client_key(request)}", limit=5, window_seconds=300
    )
    await runtime.auth.confirm_password_reset(
        body.token,
        body.new_password,
        body.confirm_password,
        context=_request_context(request),
    )
    return Envelope(status="ok", data={"status": "reset"})


# Email verification


@router.post("/auth/verify-email/request", response_model=Envelope, tags=["auth"])
async def request_email_verification(
    auth: AuthenticatedSession = Depends(get_current_session),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"verify:request:{auth.user.id}", limit=3, window_seconds=300
    )
    await runtime.auth.send_verification(auth.user.id)
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"verify:{_client_key(request)}", limit=5, window_seconds=300
    )
    user = await runtime.auth.verify_email(body.token, context=_request_context(request))
    return Envelope(status="ok", data=_user_to_response(user))


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: ResendVerificationRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify:resend:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    await runtime.auth.resend_verification(body.email)
    return Envelope(status="ok", data={"status": "sent"})


# Administration


@router.post("/admin/users/{user_id}/lock", response_model=Envelope, tags=["admin"])
async def admin_lock_user(
    request: Request,
    user_id: str = Path(..., min_length=1, max_length=64),
    body: Optional[LockUserRequest] = None,
    auth: AuthenticatedSession = Depends(require_capability("admin.lock_user")),
):
    runtime = get_runtime()
    status = await runtime.auth.lock_account(
        user_id,
        auth.user,
        body.reason if body else None,
        context=_request_context(request),
    )
    return Envelope(status="ok", data=_lockout_to_response(user_id, status))


@router.post("/admin/users/{user_id}/unlock", response_model=Envelope, tags=["admin"])
async def admin_unlock_user(
    request: Request,
    user_id: str = Path(..., min_length=1, max_length=64),
    auth: AuthenticatedSession = Depends(require_capability("admin.unlock_user")),
):
    runtime = get_runtime()
    status = await runtime.auth.unlock_account(
        user_id, auth.user, context=_request_context(request)
    )
    return Envelope(status="ok", data=_lockout_to_response(user_id, status))


@router.get("/admin/lockouts/stats", response_model=Envelope, tags=["admin"])
async def admin_lockout_stats(
    auth: AuthenticatedSession = Depends(require_capability("admin.lockout_stats")),
):
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.auth.lockout_stats())


@router.post(
    "/admin/users/{user_id}/mfa/emergency-disable", response_model=Envelope, tags=["admin"]
)
async def admin_emergency_disable_mfa(
    body: EmergencyMfaDisableRequest,
    request: Request,
    user_id: str = Path(..., min_length=1, max_length=64),
    auth: AuthenticatedSession = Depends(
        require_capability("admin.mfa_emergency_disable")
    ),
):
    """Force-disable MFA for a user who lost their authenticator.

    Clears the secret and backup codes and revokes every session of the
    target. Limited to one override per target per cooldown window.

    Raises:
        400: missing or oversized reason, self-target, inactive target
        403: caller lacks the emergency capability
        404: target not found
        409: MFA already disabled
        429: cooldown active
    """
    runtime = get_runtime()
    result = await runtime.auth.emergency_disable_mfa(
        user_id, auth.user, body.reason, context=_request_context(request)
    )
    return Envelope(
        status="ok",
        data=EmergencyMfaDisableResponse(
            audit_id=result.audit_id,
            timestamp=result.timestamp,
            target_user_id=result.target.id,
            sessions_revoked=result.sessions_revoked,
            message=result.message,
        ),
    )


@router.get("/admin/mfa/emergency-disable/history", response_model=Envelope, tags=["admin"])
async def admin_emergency_history(
    limit: int = Query(50),
    auth: AuthenticatedSession = Depends(
        require_capability("admin.mfa_emergency_history")
    ),
):
    runtime = get_runtime()
    records = await runtime.auth.emergency_history(auth.user, limit)
    return Envelope(
        status="ok",
        data=EmergencyHistoryResponse(
            items=[
                EmergencyOverrideRecordResponse(
                    id=r.id,
                    timestamp=r.timestamp,
                    admin_user_id=r.admin_user_id,
                    admin_username=r.admin_username,
                    target_user_id=r.target_user_id,
                    target_email=r.target_email,
                    target_username=r.target_username,
                    reason=r.reason,
                    ip_address=r.ip_address,
                )
                for r in records
            ]
        ),
    )


@router.get(
    "/admin/mfa/emergency-disable/capability", response_model=Envelope, tags=["admin"]
)
async def admin_emergency_capability(
    auth: AuthenticatedSession = Depends(get_current_session),
):
    runtime = get_runtime()
    allowed = await runtime.auth.can_emergency_disable(auth.user)
    return Envelope(status="ok", data={"can_perform": allowed})
