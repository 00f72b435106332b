"""
Cache key layout.

    authz:decision:<user>:<org>:<scope_type>:<scope_id>:<resource_type>:<action>:<resource_id|->
    role:<org>:<role>
    session:<user>
    tenancy:workspace:<workspace>
"""

from typing import Optional

DECISION_PREFIX = "authz:decision"
ROLE_PREFIX = "role"
SESSION_PREFIX = "session"


def decision_key(
    user_id: str,
    organization_id: str,
    scope_type: str,
    scope_id: str,
    resource_type: str,
    action: str,
    resource_id: Optional[str] = None,
) -> str:
    return ":".join([
        DECISION_PREFIX,
        user_id,
        organization_id,
        scope_type,
        scope_id,
        resource_type,
        action,
        resource_id or "-",
    ])


def user_decisions_pattern(user_id: str, organization_id: Optional[str] = None) -> str:
    """Pattern for a user's decisions, optionally limited to one organization."""
    if organization_id is None:
        return f"{DECISION_PREFIX}:{user_id}:*"
    return f"{DECISION_PREFIX}:{user_id}:{organization_id}:*"


def role_key(organization_id: str, role: str) -> str:
    return f"{ROLE_PREFIX}:{organization_id}:{role}"


def organization_roles_pattern(organization_id: str) -> str:
    return f"{ROLE_PREFIX}:{organization_id}:*"


def session_key(user_id: str) -> str:
    return f"{SESSION_PREFIX}:{user_id}"


def workspace_organization_key(workspace_id: str) -> str:
    """Owning organization of a workspace (immutable once created)."""
    return f"tenancy:workspace:{workspace_id}"
