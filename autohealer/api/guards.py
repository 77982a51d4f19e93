from __future__ import annotations

from typing import Callable, Dict, Optional

from fastapi import Depends, Header

from autohealer.logging import get_logger
from autohealer.service.capabilities import Capability, has_capability
from autohealer.service.errors import InsufficientPrivilegeError, InvalidSessionError
from autohealer.service.runtime import get_runtime
from autohealer.service.sessions import AuthenticatedSession

logger = get_logger(__name__)

# Route name -> capability the caller's role must hold
ROUTE_CAPABILITIES: Dict[str, str] = {
    "admin.lock_user": Capability.USER_LOCK,
    "admin.unlock_user": Capability.USER_UNLOCK,
    "admin.lockout_stats": Capability.LOCKOUT_STATS,
    "admin.mfa_emergency_disable": Capability.MFA_EMERGENCY_DISABLE,
    "admin.mfa_emergency_history": Capability.MFA_EMERGENCY_HISTORY,
}


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_session(
    authorization: Optional[str] = Header(None),
) -> AuthenticatedSession:
    token = _bearer_token(authorization)
    if token is None:
        raise InvalidSessionError()
    return await get_runtime().auth.authenticate(token)


def require_capability(route_name: str) -> Callable[..., AuthenticatedSession]:
    """Dependency that rejects callers whose role lacks the route's capability.

    Unknown route names fail closed.
    """
    capability = ROUTE_CAPABILITIES.get(route_name)

    async def _guard(
        auth: AuthenticatedSession = Depends(get_current_session),
    ) -> AuthenticatedSession:
        if capability is None or not has_capability(auth.user.role, capability):
            logger.warning(
                "capability_denied",
                route=route_name,
                user_id=auth.user.id,
                role=auth.user.role,
            )
            raise InsufficientPrivilegeError()
        return auth

    return _guard
