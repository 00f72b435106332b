"""
Authorization: permission catalog, roles, resource overrides and the resolver.

FastAPI integration lives in `flowguard.authz.dependencies` and
`flowguard.authz.routes`; import those directly.
"""

from flowguard.authz.acl import Override, ResourcePermissionService
from flowguard.authz.permissions import (
    Action,
    BuiltinRole,
    Permission,
    PERMISSION_CATALOG,
    ResourceType,
)
from flowguard.authz.resolver import (
    AuthorizationResolver,
    Decision,
    ScopeType,
    TenantScope,
    scope_from_route,
)
from flowguard.authz.roles import RoleService

__all__ = [
    # Catalog
    "Action",
    "BuiltinRole",
    "Permission",
    "PERMISSION_CATALOG",
    "ResourceType",
    # Roles
    "RoleService",
    # Resource overrides
    "Override",
    "ResourcePermissionService",
    # Resolver
    "AuthorizationResolver",
    "Decision",
    "ScopeType",
    "TenantScope",
    "scope_from_route",
]
