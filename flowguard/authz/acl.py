"""
Resource permission store.

Per-user, per-resource-instance overrides that take precedence over role
resolution: an explicit deny beats any role, an explicit allow grants the
action even without a role.
"""

import enum
from typing import Iterable, Optional, Union

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from flowguard.authz.permissions import Action, ResourceType
from flowguard.cache.keys import user_decisions_pattern
from flowguard.cache.service import CacheService
from flowguard.core.exceptions import ValidationError
from flowguard.core.repository import Repository
from flowguard.models import ResourcePermission

logger = structlog.get_logger(__name__)


class Override(str, enum.Enum):
    """Outcome of an ACL lookup."""
    ALLOW = "allow"
    DENY = "deny"
    NO_OVERRIDE = "no_override"


def _resource_type(value: Union[ResourceType, str]) -> str:
    try:
        return ResourceType(value).value
    except ValueError as exc:
        raise ValidationError(f"Unknown resource type '{value}'") from exc


def _action(value: Union[Action, str]) -> str:
    try:
        return Action(value).value
    except ValueError as exc:
        raise ValidationError(f"Unknown action '{value}'") from exc


class ResourcePermissionService:
    """Service for reading and administering ACL entries."""

    def __init__(self, db: AsyncSession, cache: Optional[CacheService] = None):
        self.db = db
        self.cache = cache
        self.entries = Repository(db, ResourcePermission)

    # ========================================================================
    # Lookups
    # ========================================================================

    async def has_override(
        self,
        user_id: str,
        resource_type: Union[ResourceType, str],
        resource_id: str,
        permission: Union[Action, str],
    ) -> Override:
        entry = await self._find(user_id, resource_type, resource_id, permission)
        if entry is None:
            return Override.NO_OVERRIDE
        return Override.ALLOW if entry.granted else Override.DENY

    async def batch_overrides(
        self,
        user_id: str,
        resource_type: Union[ResourceType, str],
        resource_id: str,
        permissions: Iterable[Union[Action, str]],
    ) -> dict[str, Override]:
        """Check several actions on one resource with a single query."""
        actions = [_action(p) for p in permissions]
        result = {action: Override.NO_OVERRIDE for action in actions}
        if not actions:
            return result

        entries = await self.entries.find(
            ResourcePermission.user_id == user_id,
            ResourcePermission.resource_type == _resource_type(resource_type),
            ResourcePermission.resource_id == resource_id,
            ResourcePermission.permission.in_(actions),
        )
        for entry in entries:
            result[entry.permission] = Override.ALLOW if entry.granted else Override.DENY
        return result

    async def list_for_resource(
        self,
        resource_type: Union[ResourceType, str],
        resource_id: str,
    ) -> list[ResourcePermission]:
        return await self.entries.find(
            ResourcePermission.resource_type == _resource_type(resource_type),
            ResourcePermission.resource_id == resource_id,
            order_by=(ResourcePermission.user_id, ResourcePermission.permission),
        )

    async def list_for_user(self, user_id: str) -> list[ResourcePermission]:
        return await self.entries.find(
            ResourcePermission.user_id == user_id,
            order_by=(
                ResourcePermission.resource_type,
                ResourcePermission.resource_id,
                ResourcePermission.permission,
            ),
        )

    # ========================================================================
    # Mutations
    # ========================================================================

    async def grant(
        self,
        user_id: str,
        resource_type: Union[ResourceType, str],
        resource_id: str,
        permission: Union[Action, str],
        created_by: Optional[str] = None,
    ) -> ResourcePermission:
        """Record an explicit allow."""
        return await self._upsert(user_id, resource_type, resource_id, permission, True, created_by)

    async def deny(
        self,
        user_id: str,
        resource_type: Union[ResourceType, str],
        resource_id: str,
        permission: Union[Action, str],
        created_by: Optional[str] = None,
    ) -> ResourcePermission:
        """Record an explicit deny."""
        return await self._upsert(user_id, resource_type, resource_id, permission, False, created_by)

    async def clear(
        self,
        user_id: str,
        resource_type: Union[ResourceType, str],
        resource_id: str,
        permission: Union[Action, str],
    ) -> bool:
        """Remove an override so the action falls back to role resolution."""
        entry = await self._find(user_id, resource_type, resource_id, permission)
        if entry is None:
            return False
        await self.entries.delete(entry)
        await self.entries.save()
        await self._invalidate([user_id])
        return True

    async def remove_all_for_resource(
        self,
        resource_type: Union[ResourceType, str],
        resource_id: str,
    ) -> int:
        """
        Delete every entry for a resource.

        Must be called by the owning resource's deletion path so no rows are
        left orphaned.
        """
        rtype = _resource_type(resource_type)
        affected = await self.entries.values(
            ResourcePermission.user_id,
            ResourcePermission.resource_type == rtype,
            ResourcePermission.resource_id == resource_id,
        )

        removed = await self.entries.delete_where(
            ResourcePermission.resource_type == rtype,
            ResourcePermission.resource_id == resource_id,
        )
        await self.entries.save()

        logger.info(
            "Resource permissions removed",
            resource_type=rtype,
            resource_id=resource_id,
            removed=removed,
        )
        await self._invalidate(affected)
        return removed

    async def _upsert(
        self,
        user_id: str,
        resource_type: Union[ResourceType, str],
        resource_id: str,
        permission: Union[Action, str],
        granted: bool,
        created_by: Optional[str],
    ) -> ResourcePermission:
        if not user_id or not resource_id:
            raise ValidationError("user_id and resource_id are required")

        entry = await self._find(user_id, resource_type, resource_id, permission)
        if entry is None:
            entry = ResourcePermission(
                user_id=user_id,
                resource_type=_resource_type(resource_type),
                resource_id=resource_id,
                permission=_action(permission),
                granted=granted,
                created_by=created_by,
            )
            await self.entries.add(entry)
        else:
            entry.granted = granted
        await self.entries.save()

        logger.info(
            "Resource permission set",
            user_id=user_id,
            resource_type=entry.resource_type,
            resource_id=resource_id,
            permission=entry.permission,
            granted=granted,
        )
        await self._invalidate([user_id])
        return entry

    async def _find(
        self,
        user_id: str,
        resource_type: Union[ResourceType, str],
        resource_id: str,
        permission: Union[Action, str],
    ) -> Optional[ResourcePermission]:
        return await self.entries.find_one(
            ResourcePermission.user_id == user_id,
            ResourcePermission.resource_type == _resource_type(resource_type),
            ResourcePermission.resource_id == resource_id,
            ResourcePermission.permission == _action(permission),
        )

    async def _invalidate(self, user_ids: Iterable[str]) -> None:
        if self.cache is None:
            return
        for user_id in set(user_ids):
            await self.cache.delete_pattern(user_decisions_pattern(user_id))
