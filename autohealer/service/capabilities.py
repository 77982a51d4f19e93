from __future__ import annotations

from typing import Dict, FrozenSet

from autohealer.storage.models import Role


class Capability:
    SESSION_REVOKE_ANY = "session:revoke_any"
    USER_LOCK = "user:lock"
    USER_UNLOCK = "user:unlock"
    LOCKOUT_STATS = "lockout:stats"
    MFA_EMERGENCY_DISABLE = "mfa:emergency_disable"
    MFA_EMERGENCY_HISTORY = "mfa:emergency_history"


_ADMIN_CAPABILITIES = frozenset(
    {
        Capability.SESSION_REVOKE_ANY,
        Capability.USER_LOCK,
        Capability.USER_UNLOCK,
        Capability.LOCKOUT_STATS,
        Capability.MFA_EMERGENCY_HISTORY,
    }
)

ROLE_CAPABILITIES: Dict[str, FrozenSet[str]] = {
    Role.SUPER_ADMIN: _ADMIN_CAPABILITIES | {Capability.MFA_EMERGENCY_DISABLE},
    Role.ADMIN: _ADMIN_CAPABILITIES,
    Role.ENGINEER: frozenset(),
    Role.VIEWER: frozenset(),
}


def has_capability(role: str, capability: str) -> bool:
    return capability in ROLE_CAPABILITIES.get(role, frozenset())
