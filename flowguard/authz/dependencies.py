"""
Authorization dependencies for FastAPI.

Routes declare what they need; the tenant scope is taken from the route's
path parameters.
"""

from typing import Optional, Union

from fastapi import HTTPException, Request, status

from flowguard.authz.permissions import Action, ResourceType
from flowguard.authz.resolver import ScopeType, scope_from_route
from flowguard.core.dependencies import AuthzResolverDep, PrincipalDep


class RequirePermission:
    """
    Dependency class for requiring a permission in the route's tenant scope.

    Usage:
        @router.get(
            "/organizations/{organization_id}/chatflows",
            dependencies=[Depends(RequirePermission("chatflow", "read", tenant_type="organization"))],
        )
        async def list_chatflows():
            ...

    Workspace routes pass tenant_type="workspace" and read the
    `workspace_id` path parameter. A different parameter name can be given
    with tenant_id_param; resource_id_param names the parameter holding the
    resource id used for per-resource overrides.
    """

    def __init__(
        self,
        resource_type: Union[ResourceType, str],
        action: Union[Action, str],
        tenant_type: Optional[Union[ScopeType, str]] = None,
        tenant_id_param: Optional[str] = None,
        resource_id_param: Optional[str] = None,
    ):
        self.resource_type = ResourceType(resource_type)
        self.action = Action(action)
        self.tenant_type = ScopeType(tenant_type) if tenant_type is not None else None
        self.tenant_id_param = tenant_id_param
        self.resource_id_param = resource_id_param

    @property
    def permission_key(self) -> str:
        return f"{self.resource_type.value}:{self.action.value}"

    async def __call__(
        self,
        request: Request,
        principal: PrincipalDep,
        resolver: AuthzResolverDep,
    ) -> None:
        """Check permission and raise 403 if not allowed."""
        params = request.path_params
        scope = scope_from_route(self.tenant_type, params, self.tenant_id_param)
        resource_id = params.get(self.resource_id_param) if self.resource_id_param else None

        decision = await resolver.authorize(
            principal,
            scope,
            self.resource_type,
            self.action,
            resource_id,
        )

        if not decision.allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "code": "PERMISSION_DENIED",
                    "message": "Permission denied",
                    "permission": self.permission_key,
                },
            )


class RequireSystemAdmin:
    """Dependency class for requiring system administrator access."""

    async def __call__(self, principal: PrincipalDep) -> None:
        if not principal.is_system_admin:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "code": "SYSTEM_ADMIN_REQUIRED",
                    "message": "This operation requires system administrator privileges",
                },
            )
