"""
Role engine.

Resolves built-in and custom roles to effective permission sets, and
administers custom roles and role templates.
"""

from typing import Any, Iterable, Optional

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from flowguard.authz.permissions import (
    BuiltinRole,
    Permission,
    builtin_permissions,
    parse_permissions,
)
from flowguard.cache.keys import organization_roles_pattern, role_key, user_decisions_pattern
from flowguard.cache.service import CacheService
from flowguard.core.exceptions import ConflictError, NotFoundError, ValidationError
from flowguard.core.repository import Repository
from flowguard.models import (
    CustomRole,
    CustomRolePermission,
    Organization,
    OrganizationMember,
    RoleTemplate,
    Workspace,
    WorkspaceMember,
)

logger = structlog.get_logger(__name__)

_UNSET: Any = object()


async def find_custom_role(
    db: AsyncSession,
    organization_id: str,
    role: str,
) -> Optional[CustomRole]:
    """Find a custom role of the organization by id, falling back to its name."""
    roles = Repository(db, CustomRole)
    found = await roles.find_one(
        CustomRole.organization_id == organization_id,
        CustomRole.id == role,
    )
    if found is not None:
        return found
    return await roles.find_one(
        CustomRole.organization_id == organization_id,
        CustomRole.name == role,
    )


class RoleService:
    """
    Service for custom roles, role templates and permission resolution.
    """

    def __init__(self, db: AsyncSession, cache: Optional[CacheService] = None):
        self.db = db
        self.cache = cache
        self.roles = Repository(db, CustomRole)
        self.templates = Repository(db, RoleTemplate)

    # ========================================================================
    # Permission Resolution
    # ========================================================================

    async def permissions_for_role(
        self,
        organization_id: str,
        role: str,
    ) -> frozenset[Permission]:
        """
        Resolve a membership role string within an organization.

        Built-in roles use their fixed table. Anything else is looked up as a
        custom role (id or name); an unknown role grants nothing.
        """
        builtin = BuiltinRole.lookup(role)
        if builtin is not None:
            return builtin_permissions(builtin)

        key = role_key(organization_id, role)
        cached = await self._cache_get(key)
        if cached is not None:
            return parse_permissions(cached)

        custom = await find_custom_role(self.db, organization_id, role)
        if custom is None:
            logger.warning(
                "Membership references unknown role",
                organization_id=organization_id,
                role=role,
            )
            return frozenset()

        chain = await self._role_chain(custom)
        if chain is None:
            return frozenset()

        permissions = self._union(chain)
        await self._cache_set(key, sorted(p.key for p in permissions))
        return permissions

    async def effective_permissions(self, role_id: str) -> frozenset[Permission]:
        """
        Own permissions of a custom role plus those of all its ancestors.

        A cycle in the parent chain resolves to the empty set.
        """
        role = await self.get_role(role_id)

        key = role_key(role.organization_id, role.id)
        cached = await self._cache_get(key)
        if cached is not None:
            return parse_permissions(cached)

        chain = await self._role_chain(role)
        if chain is None:
            return frozenset()

        permissions = self._union(chain)
        await self._cache_set(key, sorted(p.key for p in permissions))
        return permissions

    async def _role_chain(self, role: CustomRole) -> Optional[list[CustomRole]]:
        """Get role inheritance chain (role + all parent roles), None on a cycle."""
        chain = [role]
        seen = {role.id}
        current = role

        while current.parent_role_id:
            if current.parent_role_id in seen:
                logger.error(
                    "Role hierarchy cycle detected, failing closed",
                    role_id=role.id,
                    organization_id=role.organization_id,
                    chain=[r.id for r in chain],
                )
                return None
            parent = await self.roles.get(current.parent_role_id)
            if parent is None:
                break
            chain.append(parent)
            seen.add(parent.id)
            current = parent

        return chain

    @staticmethod
    def _union(chain: Iterable[CustomRole]) -> frozenset[Permission]:
        permissions: set[Permission] = set()
        for role in chain:
            for grant in role.permissions:
                try:
                    permissions.add(Permission.of(grant.resource_type, grant.action))
                except ValidationError:
                    logger.warning(
                        "Ignoring stored permission outside the catalog",
                        role_id=role.id,
                        permission=grant.key,
                    )
        return frozenset(permissions)

    # ========================================================================
    # Custom Roles
    # ========================================================================

    async def get_role(self, role_id: str) -> CustomRole:
        role = await self.roles.get(role_id)
        if role is None:
            raise NotFoundError(f"Role '{role_id}' not found", details={"role_id": role_id})
        return role

    async def list_roles(self, organization_id: str) -> list[CustomRole]:
        return await self.roles.find(
            CustomRole.organization_id == organization_id,
            order_by=(CustomRole.priority.desc(), CustomRole.name),
        )

    async def create_role(
        self,
        organization_id: str,
        name: str,
        permissions: Iterable[str] = (),
        description: Optional[str] = None,
        parent_role_id: Optional[str] = None,
        priority: int = 0,
        created_by: Optional[str] = None,
        template_id: Optional[str] = None,
    ) -> CustomRole:
        """Create a custom role in an organization."""
        await self._require_organization(organization_id)
        name = self._validate_name(name)
        await self._ensure_name_available(organization_id, name)
        granted = parse_permissions(permissions)

        if parent_role_id is not None:
            await self._require_parent(organization_id, parent_role_id)

        role = CustomRole(
            organization_id=organization_id,
            name=name,
            description=description,
            parent_role_id=parent_role_id,
            priority=priority,
            created_by=created_by,
            template_id=template_id,
            permissions=[
                CustomRolePermission(resource_type=p.resource_type.value, action=p.action.value)
                for p in sorted(granted)
            ],
        )
        await self.roles.add(role)
        await self.roles.save()

        logger.info("Custom role created", organization_id=organization_id, role_id=role.id, name=name)
        await self._invalidate_organization(organization_id)
        return role

    async def update_role(
        self,
        role_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        parent_role_id: Any = _UNSET,
        priority: Optional[int] = None,
    ) -> CustomRole:
        """
        Update role attributes.

        Pass `parent_role_id=None` to detach the role from its parent.
        """
        role = await self.get_role(role_id)

        if name is not None:
            name = self._validate_name(name)
            if name != role.name:
                await self._ensure_name_available(role.organization_id, name)
                role.name = name

        if description is not None:
            role.description = description

        if priority is not None:
            role.priority = priority

        if parent_role_id is not _UNSET and parent_role_id != role.parent_role_id:
            if parent_role_id is not None:
                await self._require_parent(role.organization_id, parent_role_id)
                await self._ensure_no_cycle(role, parent_role_id)
            role.parent_role_id = parent_role_id

        role.version += 1
        await self.roles.save()

        await self._invalidate_organization(role.organization_id)
        return role

    async def delete_role(self, role_id: str) -> None:
        """Delete a custom role that is neither a parent nor assigned to anyone."""
        role = await self.get_role(role_id)

        children = await self.roles.count(CustomRole.parent_role_id == role.id)
        if children:
            raise ConflictError(
                f"Role '{role.name}' is the parent of {children} other role(s)",
                details={"role_id": role.id, "children": children},
            )

        assigned = await Repository(self.db, OrganizationMember).count(
            OrganizationMember.organization_id == role.organization_id,
            OrganizationMember.role == role.id,
        )
        assigned += await Repository(self.db, WorkspaceMember).count(
            WorkspaceMember.role == role.id,
            WorkspaceMember.workspace_id.in_(
                select(Workspace.id).where(Workspace.organization_id == role.organization_id)
            ),
        )
        if assigned:
            raise ConflictError(
                f"Role '{role.name}' is still assigned to {assigned} member(s)",
                details={"role_id": role.id, "assigned": assigned},
            )

        organization_id = role.organization_id
        await self.roles.delete(role)
        await self.roles.save()

        logger.info("Custom role deleted", organization_id=organization_id, role_id=role_id)
        await self._invalidate_organization(organization_id)

    async def set_role_permissions(self, role_id: str, permissions: Iterable[str]) -> CustomRole:
        """Replace the role's own permissions."""
        role = await self.get_role(role_id)
        self._apply_permissions(role, parse_permissions(permissions))
        return await self._save_permission_change(role)

    async def add_role_permissions(self, role_id: str, permissions: Iterable[str]) -> CustomRole:
        role = await self.get_role(role_id)
        current = frozenset(Permission.of(p.resource_type, p.action) for p in role.permissions)
        self._apply_permissions(role, current | parse_permissions(permissions))
        return await self._save_permission_change(role)

    async def remove_role_permissions(self, role_id: str, permissions: Iterable[str]) -> CustomRole:
        role = await self.get_role(role_id)
        current = frozenset(Permission.of(p.resource_type, p.action) for p in role.permissions)
        self._apply_permissions(role, current - parse_permissions(permissions))
        return await self._save_permission_change(role)

    def _apply_permissions(self, role: CustomRole, desired: frozenset[Permission]) -> None:
        """Diff the role's permission rows against the desired set."""
        wanted = {(p.resource_type.value, p.action.value) for p in desired}
        keep = []
        present = set()
        for grant in role.permissions:
            key = (grant.resource_type, grant.action)
            if key in wanted:
                keep.append(grant)
                present.add(key)
        for permission in sorted(desired):
            key = (permission.resource_type.value, permission.action.value)
            if key not in present:
                keep.append(CustomRolePermission(resource_type=key[0], action=key[1]))
        role.permissions = keep

    async def _save_permission_change(self, role: CustomRole) -> CustomRole:
        role.version += 1
        await self.roles.save()
        await self._invalidate_organization(role.organization_id)
        return role

    async def role_hierarchy(self, role_id: str) -> dict[str, Any]:
        """Nested view of a role and every role that inherits from it."""
        role = await self.get_role(role_id)
        return await self._hierarchy_node(role, set())

    async def _hierarchy_node(self, role: CustomRole, seen: set[str]) -> dict[str, Any]:
        seen.add(role.id)
        children = await self.roles.find(
            CustomRole.parent_role_id == role.id,
            order_by=(CustomRole.name,),
        )
        return {
            "id": role.id,
            "name": role.name,
            "permissions": role.permission_keys,
            "children": [
                await self._hierarchy_node(child, seen)
                for child in children
                if child.id not in seen
            ],
        }

    # ========================================================================
    # Role Templates
    # ========================================================================

    async def get_template(self, template_id: str) -> RoleTemplate:
        template = await self.templates.get(template_id)
        if template is None:
            raise NotFoundError(
                f"Role template '{template_id}' not found",
                details={"template_id": template_id},
            )
        return template

    async def list_templates(self, organization_id: Optional[str] = None) -> list[RoleTemplate]:
        """Global templates plus those of the given organization."""
        scope = RoleTemplate.organization_id.is_(None)
        if organization_id is not None:
            scope = or_(scope, RoleTemplate.organization_id == organization_id)
        return await self.templates.find(scope, order_by=(RoleTemplate.name,))

    async def create_template(
        self,
        name: str,
        permissions: Iterable[str],
        organization_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> RoleTemplate:
        if organization_id is not None:
            await self._require_organization(organization_id)
        name = self._validate_name(name)
        granted = parse_permissions(permissions)

        existing = await self.templates.find_one(
            RoleTemplate.organization_id.is_(None)
            if organization_id is None
            else RoleTemplate.organization_id == organization_id,
            RoleTemplate.name == name,
        )
        if existing is not None:
            raise ConflictError(f"Role template '{name}' already exists", details={"name": name})

        template = RoleTemplate(
            organization_id=organization_id,
            name=name,
            description=description,
            permissions=sorted(p.key for p in granted),
        )
        await self.templates.add(template)
        await self.templates.save()
        return template

    async def update_template(
        self,
        template_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        permissions: Optional[Iterable[str]] = None,
        is_active: Optional[bool] = None,
    ) -> RoleTemplate:
        """Update a template. Roles already created from it are unaffected."""
        template = await self.get_template(template_id)
        if name is not None:
            template.name = self._validate_name(name)
        if description is not None:
            template.description = description
        if permissions is not None:
            template.permissions = sorted(p.key for p in parse_permissions(permissions))
        if is_active is not None:
            template.is_active = is_active
        await self.templates.save()
        return template

    async def delete_template(self, template_id: str) -> None:
        template = await self.get_template(template_id)
        await self.templates.delete(template)
        await self.templates.save()

    async def create_role_from_template(
        self,
        template_id: str,
        organization_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        parent_role_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> CustomRole:
        """Instantiate a custom role with a copy of the template's permissions."""
        template = await self.get_template(template_id)
        if template.organization_id not in (None, organization_id):
            raise NotFoundError(
                f"Role template '{template_id}' not found",
                details={"template_id": template_id},
            )
        if not template.is_active:
            raise ValidationError(
                f"Role template '{template.name}' is inactive",
                details={"template_id": template_id},
            )

        return await self.create_role(
            organization_id=organization_id,
            name=name or template.name,
            permissions=list(template.permissions or []),
            description=description if description is not None else template.description,
            parent_role_id=parent_role_id,
            created_by=created_by,
            template_id=template.id,
        )

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _require_organization(self, organization_id: str) -> None:
        if await Repository(self.db, Organization).get(organization_id) is None:
            raise NotFoundError(
                f"Organization '{organization_id}' not found",
                details={"organization_id": organization_id},
            )

    async def _require_parent(self, organization_id: str, parent_role_id: str) -> CustomRole:
        parent = await self.roles.get(parent_role_id)
        if parent is None or parent.organization_id != organization_id:
            raise NotFoundError(
                f"Parent role '{parent_role_id}' not found in organization",
                details={"parent_role_id": parent_role_id},
            )
        return parent

    async def _ensure_no_cycle(self, role: CustomRole, parent_role_id: str) -> None:
        """Walk up from the proposed parent; reaching the role means a cycle."""
        seen: set[str] = set()
        current_id: Optional[str] = parent_role_id
        while current_id is not None and current_id not in seen:
            if current_id == role.id:
                raise ValidationError(
                    "Parent assignment would create a circular role hierarchy",
                    details={"role_id": role.id, "parent_role_id": parent_role_id},
                )
            seen.add(current_id)
            current = await self.roles.get(current_id)
            current_id = current.parent_role_id if current is not None else None

    async def _ensure_name_available(self, organization_id: str, name: str) -> None:
        if BuiltinRole.lookup(name) is not None:
            raise ConflictError(f"'{name}' is a built-in role name", details={"name": name})
        existing = await self.roles.find_one(
            CustomRole.organization_id == organization_id,
            CustomRole.name == name,
        )
        if existing is not None:
            raise ConflictError(
                f"Role '{name}' already exists in organization",
                details={"organization_id": organization_id, "name": name},
            )

    @staticmethod
    def _validate_name(name: str) -> str:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Role name must not be empty")
        if ":" in name:
            raise ValidationError("Role name must not contain ':'", details={"name": name})
        return name

    async def _invalidate_organization(self, organization_id: str) -> None:
        """Drop cached role resolutions and every member's decisions."""
        if self.cache is None:
            return
        await self.cache.delete_pattern(organization_roles_pattern(organization_id))
        members = await Repository(self.db, OrganizationMember).find(
            OrganizationMember.organization_id == organization_id,
        )
        for member in members:
            await self.cache.delete_pattern(user_decisions_pattern(member.user_id, organization_id))

    async def _cache_get(self, key: str) -> Optional[list[str]]:
        if self.cache is None:
            return None
        return await self.cache.get(key)

    async def _cache_set(self, key: str, value: list[str]) -> None:
        if self.cache is not None:
            await self.cache.set(key, value)
