"""
Dependency injection utilities for FastAPI.
"""

from typing import Annotated, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer

from flowguard.auth.chain import AuthenticationChain
from flowguard.auth.principal import AuthRequest, Principal
from flowguard.authz.acl import ResourcePermissionService
from flowguard.authz.resolver import AuthorizationResolver
from flowguard.authz.roles import RoleService
from flowguard.cache.service import CacheService
from flowguard.core.config import Settings
from flowguard.core.database import AsyncSession, get_db

# Security scheme for OpenAPI docs
security = HTTPBearer(auto_error=False)


# ============================================================================
# Settings / Database / Cache
# ============================================================================


def get_app_settings(request: Request) -> Settings:
    """Settings the application was created with."""
    return request.app.state.settings


SettingsDep = Annotated[Settings, Depends(get_app_settings)]

DbSessionDep = Annotated[AsyncSession, Depends(get_db)]


def get_cache(request: Request) -> Optional[CacheService]:
    """Process-wide cache, created in the application lifespan."""
    return getattr(request.app.state, "cache", None)


CacheDep = Annotated[Optional[CacheService], Depends(get_cache)]


# ============================================================================
# Service Dependencies
# ============================================================================


async def get_role_service(db: DbSessionDep, cache: CacheDep) -> RoleService:
    return RoleService(db, cache)


RoleServiceDep = Annotated[RoleService, Depends(get_role_service)]


async def get_acl_service(db: DbSessionDep, cache: CacheDep) -> ResourcePermissionService:
    return ResourcePermissionService(db, cache)


AclServiceDep = Annotated[ResourcePermissionService, Depends(get_acl_service)]


async def get_authz_resolver(
    db: DbSessionDep,
    cache: CacheDep,
    roles: RoleServiceDep,
    acl: AclServiceDep,
) -> AuthorizationResolver:
    """Get authorization resolver instance."""
    return AuthorizationResolver(db, cache, roles=roles, acl=acl)


AuthzResolverDep = Annotated[AuthorizationResolver, Depends(get_authz_resolver)]


# ============================================================================
# Principal Dependency
# ============================================================================


async def get_auth_chain(
    request: Request,
    db: DbSessionDep,
    cache: CacheDep,
    settings: SettingsDep,
) -> AuthenticationChain:
    http_client = getattr(request.app.state, "http_client", None)
    return AuthenticationChain(db, settings.auth, cache=cache, http_client=http_client)


AuthChainDep = Annotated[AuthenticationChain, Depends(get_auth_chain)]


async def get_principal(request: Request, chain: AuthChainDep) -> Principal:
    """
    Authenticate the request.

    The principal is also attached to request.state so middleware and
    handlers downstream can read it.

    Raises:
        AuthenticationFailure: 401 if no strategy resolves an identity
    """
    cached = getattr(request.state, "principal", None)
    if cached is not None:
        return cached

    principal = await chain.authenticate(AuthRequest.from_starlette(request))
    request.state.principal = principal
    return principal


PrincipalDep = Annotated[Principal, Depends(get_principal)]
