"""
Tenancy service.

Organizations, workspaces and the two membership levels. Membership is
strictly hierarchical: a workspace member must already belong to the
workspace's organization, and leaving the organization removes every
workspace membership inside it.
"""

import re
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from flowguard.authz.permissions import BuiltinRole
from flowguard.authz.roles import find_custom_role
from flowguard.cache.keys import (
    organization_roles_pattern,
    user_decisions_pattern,
    workspace_organization_key,
)
from flowguard.cache.service import CacheService
from flowguard.core.exceptions import (
    ConflictError,
    MembershipRequiredError,
    NotFoundError,
    ValidationError,
)
from flowguard.core.repository import Repository
from flowguard.models import (
    CustomRole,
    Organization,
    OrganizationMember,
    RoleTemplate,
    Workspace,
    WorkspaceMember,
)

logger = structlog.get_logger(__name__)

SLUG_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,98}[a-z0-9])?$")


def validate_slug(slug: str) -> str:
    slug = (slug or "").strip().lower()
    if not SLUG_PATTERN.match(slug):
        raise ValidationError(
            "Slug must be lowercase letters, digits and hyphens",
            details={"slug": slug},
        )
    return slug


class TenancyService:
    """
    Service for organizations, workspaces and memberships.
    """

    def __init__(self, db: AsyncSession, cache: Optional[CacheService] = None):
        self.db = db
        self.cache = cache
        self.organizations = Repository(db, Organization)
        self.workspaces = Repository(db, Workspace)
        self.org_members = Repository(db, OrganizationMember)
        self.workspace_members = Repository(db, WorkspaceMember)

    # ========================================================================
    # Organizations
    # ========================================================================

    async def create_organization(
        self,
        name: str,
        slug: str,
        created_by: Optional[str] = None,
    ) -> Organization:
        """
        Create an organization.

        The creator, when given, becomes its first admin member.
        """
        name = self._validate_name(name)
        slug = validate_slug(slug)

        if await self.organizations.find_one(Organization.slug == slug) is not None:
            raise ConflictError(f"Organization slug '{slug}' is taken", details={"slug": slug})

        organization = Organization(name=name, slug=slug, created_by=created_by)
        await self.organizations.add(organization)

        if created_by:
            await self.org_members.add(
                OrganizationMember(
                    organization_id=organization.id,
                    user_id=created_by,
                    role=BuiltinRole.ADMIN.value,
                )
            )

        await self.organizations.save()
        logger.info("Organization created", organization_id=organization.id, slug=slug)

        if created_by:
            await self._invalidate_member(created_by, organization.id)
        return organization

    async def get_organization(self, organization_id: str) -> Organization:
        organization = await self.organizations.get(organization_id)
        if organization is None:
            raise NotFoundError(
                f"Organization '{organization_id}' not found",
                details={"organization_id": organization_id},
            )
        return organization

    async def get_organization_by_slug(self, slug: str) -> Organization:
        organization = await self.organizations.find_one(Organization.slug == slug)
        if organization is None:
            raise NotFoundError(f"Organization '{slug}' not found", details={"slug": slug})
        return organization

    async def list_organizations(self, user_id: Optional[str] = None) -> list[Organization]:
        """All organizations, or only those the user belongs to."""
        if user_id is None:
            return await self.organizations.find(order_by=(Organization.name,))
        return await self.organizations.find(
            Organization.id.in_(
                select(OrganizationMember.organization_id).where(
                    OrganizationMember.user_id == user_id
                )
            ),
            order_by=(Organization.name,),
        )

    async def update_organization(
        self,
        organization_id: str,
        name: Optional[str] = None,
        slug: Optional[str] = None,
    ) -> Organization:
        organization = await self.get_organization(organization_id)

        if name is not None:
            organization.name = self._validate_name(name)

        if slug is not None:
            slug = validate_slug(slug)
            if slug != organization.slug:
                taken = await self.organizations.find_one(Organization.slug == slug)
                if taken is not None:
                    raise ConflictError(f"Organization slug '{slug}' is taken", details={"slug": slug})
                organization.slug = slug

        await self.organizations.save()
        return organization

    async def delete_organization(self, organization_id: str) -> None:
        """Delete an organization with its workspaces, members and custom roles."""
        organization = await self.get_organization(organization_id)
        user_ids = await self.org_members.values(
            OrganizationMember.user_id,
            OrganizationMember.organization_id == organization_id,
        )
        workspace_ids = await self.workspaces.values(
            Workspace.id,
            Workspace.organization_id == organization_id,
        )

        await self.workspace_members.delete_where(WorkspaceMember.workspace_id.in_(workspace_ids))
        await self.workspaces.delete_where(Workspace.organization_id == organization_id)
        await self.org_members.delete_where(OrganizationMember.organization_id == organization_id)

        roles = Repository(self.db, CustomRole)
        for role in await roles.find(CustomRole.organization_id == organization_id):
            # Detach first so self-referencing rows can be removed in any order
            role.parent_role_id = None
        await roles.flush()
        for role in await roles.find(CustomRole.organization_id == organization_id):
            await roles.delete(role)
        await Repository(self.db, RoleTemplate).delete_where(
            RoleTemplate.organization_id == organization_id
        )

        await self.organizations.delete(organization)
        await self.organizations.save()
        logger.info("Organization deleted", organization_id=organization_id)

        if self.cache is not None:
            await self.cache.delete_pattern(organization_roles_pattern(organization_id))
            for workspace_id in workspace_ids:
                await self.cache.delete(workspace_organization_key(workspace_id))
        for user_id in user_ids:
            await self._invalidate_member(user_id, organization_id)

    # ========================================================================
    # Workspaces
    # ========================================================================

    async def create_workspace(self, organization_id: str, name: str, slug: str) -> Workspace:
        await self.get_organization(organization_id)
        name = self._validate_name(name)
        slug = validate_slug(slug)

        existing = await self.workspaces.find_one(
            Workspace.organization_id == organization_id,
            Workspace.slug == slug,
        )
        if existing is not None:
            raise ConflictError(
                f"Workspace slug '{slug}' already exists in organization",
                details={"organization_id": organization_id, "slug": slug},
            )

        workspace = Workspace(organization_id=organization_id, name=name, slug=slug)
        await self.workspaces.add(workspace)
        await self.workspaces.save()
        logger.info("Workspace created", organization_id=organization_id, workspace_id=workspace.id)
        return workspace

    async def get_workspace(self, workspace_id: str) -> Workspace:
        workspace = await self.workspaces.get(workspace_id)
        if workspace is None:
            raise NotFoundError(
                f"Workspace '{workspace_id}' not found",
                details={"workspace_id": workspace_id},
            )
        return workspace

    async def get_workspace_by_slug(self, organization_id: str, slug: str) -> Workspace:
        workspace = await self.workspaces.find_one(
            Workspace.organization_id == organization_id,
            Workspace.slug == slug,
        )
        if workspace is None:
            raise NotFoundError(f"Workspace '{slug}' not found", details={"slug": slug})
        return workspace

    async def list_workspaces(
        self,
        organization_id: str,
        user_id: Optional[str] = None,
    ) -> list[Workspace]:
        """Workspaces of an organization, optionally only those the user belongs to."""
        criteria = [Workspace.organization_id == organization_id]
        if user_id is not None:
            criteria.append(
                Workspace.id.in_(
                    select(WorkspaceMember.workspace_id).where(WorkspaceMember.user_id == user_id)
                )
            )
        return await self.workspaces.find(*criteria, order_by=(Workspace.name,))

    async def update_workspace(
        self,
        workspace_id: str,
        name: Optional[str] = None,
        slug: Optional[str] = None,
    ) -> Workspace:
        workspace = await self.get_workspace(workspace_id)

        if name is not None:
            workspace.name = self._validate_name(name)

        if slug is not None:
            slug = validate_slug(slug)
            if slug != workspace.slug:
                taken = await self.workspaces.find_one(
                    Workspace.organization_id == workspace.organization_id,
                    Workspace.slug == slug,
                )
                if taken is not None:
                    raise ConflictError(
                        f"Workspace slug '{slug}' already exists in organization",
                        details={"slug": slug},
                    )
                workspace.slug = slug

        await self.workspaces.save()
        return workspace

    async def delete_workspace(self, workspace_id: str) -> None:
        workspace = await self.get_workspace(workspace_id)
        user_ids = await self.workspace_members.values(
            WorkspaceMember.user_id,
            WorkspaceMember.workspace_id == workspace_id,
        )

        await self.workspace_members.delete_where(WorkspaceMember.workspace_id == workspace_id)
        await self.workspaces.delete(workspace)
        await self.workspaces.save()
        logger.info("Workspace deleted", workspace_id=workspace_id)
        if self.cache is not None:
            await self.cache.delete(workspace_organization_key(workspace_id))

        for user_id in user_ids:
            await self._invalidate_member(user_id, workspace.organization_id)

    # ========================================================================
    # Organization Members
    # ========================================================================

    async def get_organization_member(
        self,
        organization_id: str,
        user_id: str,
    ) -> Optional[OrganizationMember]:
        return await self.org_members.get((organization_id, user_id))

    async def list_organization_members(self, organization_id: str) -> list[OrganizationMember]:
        await self.get_organization(organization_id)
        return await self.org_members.find(
            OrganizationMember.organization_id == organization_id,
            order_by=(OrganizationMember.user_id,),
        )

    async def add_organization_member(
        self,
        organization_id: str,
        user_id: str,
        role: str = BuiltinRole.MEMBER.value,
    ) -> OrganizationMember:
        await self.get_organization(organization_id)
        role = await self._validate_role(organization_id, role)

        if await self.get_organization_member(organization_id, user_id) is not None:
            raise ConflictError(
                "User is already a member of this organization",
                details={"organization_id": organization_id, "user_id": user_id},
            )

        member = OrganizationMember(organization_id=organization_id, user_id=user_id, role=role)
        await self.org_members.add(member)
        await self.org_members.save()

        logger.info("Organization member added", organization_id=organization_id, user_id=user_id, role=role)
        await self._invalidate_member(user_id, organization_id)
        return member

    async def update_organization_member_role(
        self,
        organization_id: str,
        user_id: str,
        role: str,
    ) -> OrganizationMember:
        member = await self._require_org_member(organization_id, user_id)
        member.role = await self._validate_role(organization_id, role)
        await self.org_members.save()

        logger.info("Organization member role changed", organization_id=organization_id, user_id=user_id, role=member.role)
        await self._invalidate_member(user_id, organization_id)
        return member

    async def remove_organization_member(self, organization_id: str, user_id: str) -> None:
        """Remove a user from an organization and from all of its workspaces."""
        member = await self._require_org_member(organization_id, user_id)

        removed = await self.workspace_members.delete_where(
            WorkspaceMember.user_id == user_id,
            WorkspaceMember.workspace_id.in_(
                select(Workspace.id).where(Workspace.organization_id == organization_id)
            ),
        )
        await self.org_members.delete(member)
        await self.org_members.save()

        logger.info(
            "Organization member removed",
            organization_id=organization_id,
            user_id=user_id,
            workspace_memberships_removed=removed,
        )
        await self._invalidate_member(user_id, organization_id)

    # ========================================================================
    # Workspace Members
    # ========================================================================

    async def get_workspace_member(
        self,
        workspace_id: str,
        user_id: str,
    ) -> Optional[WorkspaceMember]:
        return await self.workspace_members.get((workspace_id, user_id))

    async def list_workspace_members(self, workspace_id: str) -> list[WorkspaceMember]:
        await self.get_workspace(workspace_id)
        return await self.workspace_members.find(
            WorkspaceMember.workspace_id == workspace_id,
            order_by=(WorkspaceMember.user_id,),
        )

    async def add_workspace_member(
        self,
        workspace_id: str,
        user_id: str,
        role: str = BuiltinRole.MEMBER.value,
    ) -> WorkspaceMember:
        """
        Add a user to a workspace.

        Raises:
            MembershipRequiredError: the user is not a member of the
                workspace's organization
            ConflictError: the user already belongs to the workspace
        """
        workspace = await self.get_workspace(workspace_id)

        if await self.get_organization_member(workspace.organization_id, user_id) is None:
            raise MembershipRequiredError(
                "User must be a member of the organization before joining one of its workspaces",
                details={"organization_id": workspace.organization_id, "user_id": user_id},
            )

        role = await self._validate_role(workspace.organization_id, role)

        if await self.get_workspace_member(workspace_id, user_id) is not None:
            raise ConflictError(
                "User is already a member of this workspace",
                details={"workspace_id": workspace_id, "user_id": user_id},
            )

        member = WorkspaceMember(workspace_id=workspace_id, user_id=user_id, role=role)
        await self.workspace_members.add(member)
        await self.workspace_members.save()

        logger.info("Workspace member added", workspace_id=workspace_id, user_id=user_id, role=role)
        await self._invalidate_member(user_id, workspace.organization_id)
        return member

    async def update_workspace_member_role(
        self,
        workspace_id: str,
        user_id: str,
        role: str,
    ) -> WorkspaceMember:
        workspace = await self.get_workspace(workspace_id)
        member = await self._require_workspace_member(workspace_id, user_id)
        member.role = await self._validate_role(workspace.organization_id, role)
        await self.workspace_members.save()

        await self._invalidate_member(user_id, workspace.organization_id)
        return member

    async def remove_workspace_member(self, workspace_id: str, user_id: str) -> None:
        workspace = await self.get_workspace(workspace_id)
        member = await self._require_workspace_member(workspace_id, user_id)
        await self.workspace_members.delete(member)
        await self.workspace_members.save()

        logger.info("Workspace member removed", workspace_id=workspace_id, user_id=user_id)
        await self._invalidate_member(user_id, workspace.organization_id)

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _require_org_member(self, organization_id: str, user_id: str) -> OrganizationMember:
        member = await self.get_organization_member(organization_id, user_id)
        if member is None:
            raise NotFoundError(
                "Organization member not found",
                details={"organization_id": organization_id, "user_id": user_id},
            )
        return member

    async def _require_workspace_member(self, workspace_id: str, user_id: str) -> WorkspaceMember:
        member = await self.get_workspace_member(workspace_id, user_id)
        if member is None:
            raise NotFoundError(
                "Workspace member not found",
                details={"workspace_id": workspace_id, "user_id": user_id},
            )
        return member

    async def _validate_role(self, organization_id: str, role: str) -> str:
        """
        Normalize a role reference for storage on a membership.

        Built-in roles are stored by name, custom roles by id so that a
        rename never detaches their members.
        """
        builtin = BuiltinRole.lookup(role)
        if builtin is not None:
            return builtin.value
        if role:
            custom = await find_custom_role(self.db, organization_id, role)
            if custom is not None:
                return custom.id
        raise ValidationError(
            f"Unknown role '{role}'",
            details={"organization_id": organization_id, "role": role},
        )

    @staticmethod
    def _validate_name(name: str) -> str:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Name must not be empty")
        return name

    async def _invalidate_member(self, user_id: str, organization_id: str) -> None:
        if self.cache is not None:
            await self.cache.delete_pattern(user_decisions_pattern(user_id, organization_id))
