"""
Permission catalog and built-in role tables.

Permissions are `(resource_type, action)` pairs drawn from a fixed,
enumerated catalog. Built-in roles map to constant permission sets.
"""

import enum
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from flowguard.core.exceptions import ValidationError


class ResourceType(str, enum.Enum):
    """Kinds of resources the engine authorizes."""
    ORGANIZATION = "organization"
    WORKSPACE = "workspace"
    USER = "user"
    ROLE = "role"
    PERMISSION = "permission"
    CHATFLOW = "chatflow"
    CREDENTIAL = "credential"
    TOOL = "tool"
    ASSISTANT = "assistant"
    VARIABLE = "variable"
    DOCUMENT_STORE = "document_store"
    API_KEY = "api_key"
    AUDIT = "audit"


class Action(str, enum.Enum):
    """Actions that can be performed on a resource."""
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    EXECUTE = "execute"
    MANAGE = "manage"
    SHARE = "share"
    ASSIGN = "assign"


@dataclass(frozen=True, order=True)
class Permission:
    """A single grantable permission."""

    resource_type: ResourceType
    action: Action

    @property
    def key(self) -> str:
        return f"{self.resource_type.value}:{self.action.value}"

    def __str__(self) -> str:
        return self.key

    @classmethod
    def of(
        cls,
        resource_type: Union[ResourceType, str],
        action: Union[Action, str],
    ) -> "Permission":
        """Build a permission from enum members or their string values."""
        try:
            return cls(ResourceType(resource_type), Action(action))
        except ValueError as exc:
            raise ValidationError(
                f"Unknown permission '{resource_type}:{action}'",
                details={"resource_type": str(resource_type), "action": str(action)},
            ) from exc

    @classmethod
    def parse(cls, text: str) -> "Permission":
        """Parse `resource_type:action`."""
        resource_type, sep, action = text.partition(":")
        if not sep or not resource_type or not action:
            raise ValidationError(
                f"Permission must look like 'resource:action', got '{text}'",
                details={"permission": text},
            )
        return cls.of(resource_type.strip(), action.strip())


def _build_catalog() -> frozenset[Permission]:
    """
    CRUD on every resource type, plus the type-specific extras:
    execute on chatflows, share on shareable resources, manage on tenants,
    assign on roles and permissions.
    """
    crud = (Action.READ, Action.CREATE, Action.UPDATE, Action.DELETE)
    extras = {
        Action.EXECUTE: (ResourceType.CHATFLOW,),
        Action.SHARE: (ResourceType.CHATFLOW, ResourceType.CREDENTIAL, ResourceType.ASSISTANT),
        Action.MANAGE: (ResourceType.ORGANIZATION, ResourceType.WORKSPACE),
        Action.ASSIGN: (ResourceType.ROLE, ResourceType.PERMISSION),
    }
    perms = {Permission(rt, action) for rt in ResourceType for action in crud}
    for action, resource_types in extras.items():
        perms.update(Permission(rt, action) for rt in resource_types)
    return frozenset(perms)


PERMISSION_CATALOG: frozenset[Permission] = _build_catalog()


def catalog_permission(text: str) -> Permission:
    """Parse a permission and require it to be part of the catalog."""
    permission = Permission.parse(text)
    if permission not in PERMISSION_CATALOG:
        raise ValidationError(
            f"Permission '{permission.key}' is not defined",
            details={"permission": permission.key},
        )
    return permission


def parse_permissions(values: Iterable[str]) -> frozenset[Permission]:
    return frozenset(catalog_permission(value) for value in values)


# ============================================================================
# Built-in roles
# ============================================================================


class BuiltinRole(str, enum.Enum):
    """Roles every organization has without configuration."""
    ADMIN = "admin"
    MEMBER = "member"
    READONLY = "readonly"

    @classmethod
    def lookup(cls, name: Optional[str]) -> Optional["BuiltinRole"]:
        """Resolve a role string (case-insensitive, `viewer` is an alias)."""
        if not name:
            return None
        normalized = name.strip().lower()
        if normalized == "viewer":
            return cls.READONLY
        try:
            return cls(normalized)
        except ValueError:
            return None


_MEMBER_PERMISSIONS = parse_permissions([
    "organization:read",
    "workspace:read",
    "user:read",
    "chatflow:read",
    "chatflow:create",
    "chatflow:update",
    "chatflow:execute",
    "credential:read",
    "credential:create",
    "credential:update",
    "tool:read",
    "assistant:read",
    "assistant:create",
    "assistant:update",
    "variable:read",
    "variable:create",
    "variable:update",
    "document_store:read",
    "document_store:create",
    "document_store:update",
    "audit:read",
])

_READONLY_PERMISSIONS = parse_permissions([
    "organization:read",
    "workspace:read",
    "user:read",
    "chatflow:read",
    "chatflow:execute",
    "credential:read",
    "tool:read",
    "assistant:read",
    "variable:read",
    "document_store:read",
    "audit:read",
])

BUILTIN_ROLE_PERMISSIONS: dict[BuiltinRole, frozenset[Permission]] = {
    BuiltinRole.ADMIN: PERMISSION_CATALOG,
    BuiltinRole.MEMBER: _MEMBER_PERMISSIONS,
    BuiltinRole.READONLY: _READONLY_PERMISSIONS,
}


def builtin_permissions(role: BuiltinRole) -> frozenset[Permission]:
    return BUILTIN_ROLE_PERMISSIONS[role]
