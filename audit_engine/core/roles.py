"""
Roles for callers of the engine API.

Each role may do everything the roles before it may do:

- viewer: read activity, verification results, policies, runs and alert groups
- operator: dry-run retention sweeps, integrity sweeps, merge-group GC and retries
- security_analyst: ingest activity, which runs per-event alerting
- auditor: restore archived records
- admin: live retention sweeps, policy and rule changes, API key management
"""
from enum import Enum
from typing import Dict


class Role(str, Enum):
    VIEWER = "viewer"
    OPERATOR = "operator"
    SECURITY_ANALYST = "security_analyst"
    AUDITOR = "auditor"
    ADMIN = "admin"

    @property
    def level(self) -> int:
        return ROLE_ORDER.index(self)


ROLE_ORDER = (Role.VIEWER, Role.OPERATOR, Role.SECURITY_ANALYST, Role.AUDITOR, Role.ADMIN)

# Names used by keys issued before the current role set
LEGACY_ROLE_MAP: Dict[str, Role] = {
    "read_only": Role.VIEWER,
    "scheduler": Role.OPERATOR,
}


def parse_role(role: str) -> Role:
    """
    Resolve a role name, accepting legacy names.

    Raises:
        ValueError: The name is not a known or legacy role
    """
    name = role.lower().strip()
    if name in LEGACY_ROLE_MAP:
        return LEGACY_ROLE_MAP[name]
    try:
        return Role(name)
    except ValueError:
        raise ValueError(
            f"Unknown role {role!r}; expected one of {', '.join(r.value for r in ROLE_ORDER)}"
        ) from None


def normalize_role(role: str) -> str:
    """Role name for a stored key. Unknown names get the least privilege."""
    try:
        return parse_role(role).value
    except ValueError:
        return Role.VIEWER.value


def has_permission(user_role: str, required_role: str) -> bool:
    """True when user_role is at or above required_role."""
    return Role(normalize_role(user_role)).level >= Role(normalize_role(required_role)).level
