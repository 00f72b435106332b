"""
Database models.
"""

from flowguard.models.acl import ResourcePermission
from flowguard.models.identity import ApiKey, UserProfile
from flowguard.models.roles import CustomRole, CustomRolePermission, RoleTemplate
from flowguard.models.tenancy import Organization, OrganizationMember, Workspace, WorkspaceMember

__all__ = [
    "ApiKey",
    "CustomRole",
    "CustomRolePermission",
    "Organization",
    "OrganizationMember",
    "ResourcePermission",
    "RoleTemplate",
    "UserProfile",
    "Workspace",
    "WorkspaceMember",
]
