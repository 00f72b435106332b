"""
Authorization resolver.

One entry point for every authorization check, whatever the route shape
(organization-scoped, workspace-scoped or global). Resolution order:

1. System administrators and internal principals are allowed.
2. A principal without a user id is denied.
3. With a resource id, an explicit ACL deny or allow decides.
4. Without a resolvable tenant scope the check is denied.
5. The member role in the scope is resolved to its effective permission
   set. In a workspace, organization admins are allowed even without a
   workspace membership.
6. Anything else is denied.
"""

import enum
from dataclasses import dataclass
from typing import Mapping, Optional, Union

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from flowguard.auth.principal import Principal
from flowguard.authz.acl import Override, ResourcePermissionService
from flowguard.authz.permissions import (
    PERMISSION_CATALOG,
    Action,
    BuiltinRole,
    Permission,
    ResourceType,
)
from flowguard.authz.roles import RoleService
from flowguard.cache.keys import decision_key, workspace_organization_key
from flowguard.cache.service import CacheService
from flowguard.core.exceptions import AuthorizationDenied, ValidationError
from flowguard.core.repository import Repository
from flowguard.models import OrganizationMember, Workspace, WorkspaceMember

logger = structlog.get_logger(__name__)


class ScopeType(str, enum.Enum):
    ORGANIZATION = "organization"
    WORKSPACE = "workspace"


@dataclass(frozen=True)
class TenantScope:
    """Organization or workspace an authorization check is evaluated against."""

    scope_type: ScopeType
    scope_id: str

    @classmethod
    def organization(cls, organization_id: str) -> "TenantScope":
        return cls(ScopeType.ORGANIZATION, organization_id)

    @classmethod
    def workspace(cls, workspace_id: str) -> "TenantScope":
        return cls(ScopeType.WORKSPACE, workspace_id)


class Decision(str, enum.Enum):
    ALLOW = "allow"
    DENY = "deny"

    @property
    def allowed(self) -> bool:
        return self is Decision.ALLOW


DEFAULT_TENANT_ID_PARAMS = {
    ScopeType.ORGANIZATION: "organization_id",
    ScopeType.WORKSPACE: "workspace_id",
}


def scope_from_route(
    tenant_type: Optional[Union[ScopeType, str]],
    params: Mapping[str, str],
    tenant_id_param: Optional[str] = None,
) -> Optional[TenantScope]:
    """
    Derive the tenant scope from route parameters.

    Returns None for global routes (no tenant type) or when the parameter
    is absent, which the resolver treats as an unresolvable scope.
    """
    if tenant_type is None:
        return None
    try:
        scope_type = ScopeType(tenant_type)
    except ValueError as exc:
        raise ValidationError(
            f"Unknown tenant type '{tenant_type}'",
            details={"tenant_type": str(tenant_type)},
        ) from exc

    tenant_id = params.get(tenant_id_param or DEFAULT_TENANT_ID_PARAMS[scope_type])
    if not tenant_id:
        return None
    return TenantScope(scope_type, tenant_id)


class AuthorizationResolver:
    """
    Decides allow or deny for (principal, scope, resource type, action,
    resource id). Decisions are cached per user and organization.
    """

    def __init__(
        self,
        db: AsyncSession,
        cache: Optional[CacheService] = None,
        roles: Optional[RoleService] = None,
        acl: Optional[ResourcePermissionService] = None,
    ):
        self.db = db
        self.cache = cache
        self.roles = roles or RoleService(db, cache)
        self.acl = acl or ResourcePermissionService(db, cache)
        self.workspaces = Repository(db, Workspace)
        self.org_members = Repository(db, OrganizationMember)
        self.workspace_members = Repository(db, WorkspaceMember)

    async def authorize(
        self,
        principal: Principal,
        scope: Optional[TenantScope],
        resource_type: Union[ResourceType, str],
        action: Union[Action, str],
        resource_id: Optional[str] = None,
    ) -> Decision:
        if principal.is_system_admin or principal.is_internal:
            return Decision.ALLOW

        if not principal.user_id:
            logger.warning(
                "Authorization denied: principal has no user identifier",
                auth_method=principal.auth_method.value,
                api_key_id=principal.api_key_id,
            )
            return Decision.DENY

        try:
            permission = Permission(ResourceType(resource_type), Action(action))
        except ValueError:
            logger.warning(
                "Authorization denied: unknown permission",
                resource_type=str(resource_type),
                action=str(action),
            )
            return Decision.DENY

        if resource_id:
            override = await self._override(principal.user_id, permission, resource_id)
            if override is not None:
                return override

        if scope is None:
            logger.warning(
                "Authorization denied: no tenant scope could be resolved",
                user_id=principal.user_id,
                permission=permission.key,
                resource_id=resource_id,
            )
            return Decision.DENY

        organization_id = await self._organization_of(scope)
        if organization_id is None:
            logger.warning(
                "Authorization denied: tenant scope does not exist",
                user_id=principal.user_id,
                scope_type=scope.scope_type.value,
                scope_id=scope.scope_id,
            )
            return Decision.DENY

        key = decision_key(
            principal.user_id,
            organization_id,
            scope.scope_type.value,
            scope.scope_id,
            permission.resource_type.value,
            permission.action.value,
            resource_id,
        )
        if self.cache is not None:
            cached = await self.cache.get(key)
            if cached is not None:
                return Decision(cached)

        decision = await self._resolve(principal.user_id, scope, organization_id, permission)

        if self.cache is not None:
            await self.cache.set(key, decision.value)

        if not decision.allowed:
            logger.debug(
                "Authorization denied",
                user_id=principal.user_id,
                scope_type=scope.scope_type.value,
                scope_id=scope.scope_id,
                permission=permission.key,
                resource_id=resource_id,
            )
        return decision

    async def require(
        self,
        principal: Principal,
        scope: Optional[TenantScope],
        resource_type: Union[ResourceType, str],
        action: Union[Action, str],
        resource_id: Optional[str] = None,
    ) -> None:
        """Authorize or raise AuthorizationDenied."""
        decision = await self.authorize(principal, scope, resource_type, action, resource_id)
        if not decision.allowed:
            raise AuthorizationDenied(
                "Permission denied",
                details={
                    "permission": f"{getattr(resource_type, 'value', resource_type)}:"
                                  f"{getattr(action, 'value', action)}",
                    "resource_id": resource_id,
                },
            )

    async def accessible_permissions(
        self,
        principal: Principal,
        scope: Optional[TenantScope],
    ) -> frozenset[Permission]:
        """Role-derived permissions of the principal in a scope (ACL overrides excluded)."""
        if principal.is_system_admin or principal.is_internal:
            return PERMISSION_CATALOG
        if not principal.user_id or scope is None:
            return frozenset()

        organization_id = await self._organization_of(scope)
        if organization_id is None:
            return frozenset()

        org_member = await self.org_members.get((organization_id, principal.user_id))

        if scope.scope_type is ScopeType.ORGANIZATION:
            if org_member is None:
                return frozenset()
            return await self.roles.permissions_for_role(organization_id, org_member.role)

        if org_member is not None and BuiltinRole.lookup(org_member.role) is BuiltinRole.ADMIN:
            return PERMISSION_CATALOG

        ws_member = await self.workspace_members.get((scope.scope_id, principal.user_id))
        if ws_member is None:
            return frozenset()
        return await self.roles.permissions_for_role(organization_id, ws_member.role)

    # ========================================================================
    # Resolution
    # ========================================================================

    async def _override(
        self,
        user_id: str,
        permission: Permission,
        resource_id: str,
    ) -> Optional[Decision]:
        """Explicit per-resource decision, or None when no entry exists."""
        override = await self.acl.has_override(
            user_id,
            permission.resource_type,
            resource_id,
            permission.action,
        )
        if override is Override.DENY:
            return Decision.DENY
        if override is Override.ALLOW:
            return Decision.ALLOW
        return None

    async def _resolve(
        self,
        user_id: str,
        scope: TenantScope,
        organization_id: str,
        permission: Permission,
    ) -> Decision:
        if scope.scope_type is ScopeType.WORKSPACE:
            ws_member = await self.workspace_members.get((scope.scope_id, user_id))
            if ws_member is not None:
                granted = await self.roles.permissions_for_role(organization_id, ws_member.role)
                if permission in granted:
                    return Decision.ALLOW

            # Organization admins administer every workspace of the organization
            org_member = await self.org_members.get((organization_id, user_id))
            if org_member is not None and BuiltinRole.lookup(org_member.role) is BuiltinRole.ADMIN:
                return Decision.ALLOW
            return Decision.DENY

        org_member = await self.org_members.get((organization_id, user_id))
        if org_member is None:
            return Decision.DENY
        granted = await self.roles.permissions_for_role(organization_id, org_member.role)
        return Decision.ALLOW if permission in granted else Decision.DENY

    async def _organization_of(self, scope: TenantScope) -> Optional[str]:
        """Organization that owns the scope, or None if the scope does not exist."""
        if scope.scope_type is ScopeType.ORGANIZATION:
            return scope.scope_id

        key = workspace_organization_key(scope.scope_id)
        if self.cache is not None:
            cached = await self.cache.get(key)
            if cached is not None:
                return cached

        workspace = await self.workspaces.get(scope.scope_id)
        if workspace is None:
            return None

        if self.cache is not None:
            await self.cache.set(key, workspace.organization_id)
        return workspace.organization_id
