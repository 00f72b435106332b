"""
Authorization API routes.

Provides endpoints for:
- Current principal and its permissions in a scope
- Ad-hoc authorization checks
"""

from typing import Optional

from fastapi import APIRouter, Query

from flowguard.authz.resolver import ScopeType, TenantScope
from flowguard.authz.schemas import (
    AuthzCheckRequest,
    AuthzCheckResponse,
    AuthzMeResponse,
    PrincipalResponse,
)
from flowguard.core.dependencies import AuthzResolverDep, PrincipalDep

router = APIRouter(prefix="/authz", tags=["Authorization"])


@router.get("/me", response_model=AuthzMeResponse)
async def get_me(
    principal: PrincipalDep,
    resolver: AuthzResolverDep,
    tenant_type: Optional[ScopeType] = Query(None),
    tenant_id: Optional[str] = Query(None),
):
    """
    Get the current principal.

    With tenant_type and tenant_id, also returns the role-derived
    permissions the principal holds in that scope.
    """
    scope = TenantScope(tenant_type, tenant_id) if tenant_type and tenant_id else None
    permissions = []
    if scope is not None:
        granted = await resolver.accessible_permissions(principal, scope)
        permissions = sorted(permission.key for permission in granted)

    return AuthzMeResponse(
        principal=PrincipalResponse(**principal.to_dict()),
        scope_type=scope.scope_type if scope else None,
        scope_id=scope.scope_id if scope else None,
        permissions=permissions,
    )


@router.post("/check", response_model=AuthzCheckResponse)
async def check_permission(
    data: AuthzCheckRequest,
    principal: PrincipalDep,
    resolver: AuthzResolverDep,
):
    """Evaluate one (scope, resource type, action, resource id) tuple."""
    scope = None
    if data.tenant_type is not None and data.tenant_id:
        scope = TenantScope(data.tenant_type, data.tenant_id)

    decision = await resolver.authorize(
        principal,
        scope,
        data.resource_type,
        data.action,
        data.resource_id,
    )
    return AuthzCheckResponse(
        decision=decision,
        allowed=decision.allowed,
        permission=f"{data.resource_type.value}:{data.action.value}",
    )
