"""
Pydantic schemas for authorization.
"""

from typing import Optional

from pydantic import BaseModel, Field

from flowguard.authz.permissions import Action, ResourceType
from flowguard.authz.resolver import Decision, ScopeType


# ============================================================================
# Principal Schemas
# ============================================================================


class PrincipalResponse(BaseModel):
    """Authenticated principal of the current request."""
    user_id: Optional[str] = None
    auth_method: str
    api_key_id: Optional[str] = None
    is_system_admin: bool = False
    is_internal: bool = False
    email: Optional[str] = None


class AuthzMeResponse(BaseModel):
    """Current principal plus its permissions in the requested scope."""
    principal: PrincipalResponse
    scope_type: Optional[ScopeType] = None
    scope_id: Optional[str] = None
    permissions: list[str] = Field(default_factory=list)


# ============================================================================
# Check Schemas
# ============================================================================


class AuthzCheckRequest(BaseModel):
    """Authorization tuple to evaluate for the current principal."""
    resource_type: ResourceType
    action: Action
    tenant_type: Optional[ScopeType] = None
    tenant_id: Optional[str] = Field(None, max_length=255)
    resource_id: Optional[str] = Field(None, max_length=255)


class AuthzCheckResponse(BaseModel):
    """Authorization decision."""
    decision: Decision
    allowed: bool
    permission: str


# ============================================================================
# Health Schemas
# ============================================================================


class HealthResponse(BaseModel):
    """Service health status."""
    status: str
    version: str
    database: Optional[str] = None
    cache: Optional[str] = None
