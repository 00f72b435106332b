import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from flowguard.auth.principal import AuthMethod, Principal
from flowguard.authz.permissions import (
    PERMISSION_CATALOG,
    BuiltinRole,
    Permission,
    builtin_permissions,
    catalog_permission,
)
from flowguard.authz.resolver import AuthorizationResolver, Decision, TenantScope
from flowguard.authz.roles import RoleService
from flowguard.cache.keys import decision_key, role_key
from flowguard.cache.service import CacheService
from flowguard.core.exceptions import ConflictError, NotFoundError, ValidationError
from flowguard.tenancy.service import TenancyService

from tests.conftest import Acme


def keys(permissions) -> set[str]:
    return {p.key for p in permissions}


# ============================================================================
# Catalog
# ============================================================================


def test_permission_parse_validates_against_enums() -> None:
    assert Permission.parse("chatflow:read").key == "chatflow:read"

    with pytest.raises(ValidationError):
        Permission.parse("chatflow")
    with pytest.raises(ValidationError):
        Permission.parse("spaceship:read")
    with pytest.raises(ValidationError):
        # Valid enums, but not a catalog entry
        catalog_permission("tool:execute")


def test_builtin_tables() -> None:
    assert builtin_permissions(BuiltinRole.ADMIN) == PERMISSION_CATALOG
    member = keys(builtin_permissions(BuiltinRole.MEMBER))
    readonly = keys(builtin_permissions(BuiltinRole.READONLY))

    assert {"chatflow:read", "chatflow:update", "chatflow:execute"} <= member
    assert "chatflow:delete" not in member
    assert "chatflow:execute" in readonly
    assert "chatflow:update" not in readonly
    assert BuiltinRole.lookup("Viewer") is BuiltinRole.READONLY
    assert BuiltinRole.lookup("editor") is None


# ============================================================================
# Inheritance
# ============================================================================


async def test_inheritance_is_transitive(acme: Acme, roles: RoleService) -> None:
    a = await roles.create_role(acme.organization_id, "reader", ["chatflow:read"])
    b = await roles.create_role(acme.organization_id, "writer", ["chatflow:update"], parent_role_id=a.id)
    c = await roles.create_role(acme.organization_id, "publisher", ["chatflow:share"], parent_role_id=b.id)

    effective = keys(await roles.effective_permissions(c.id))

    assert effective == {"chatflow:read", "chatflow:update", "chatflow:share"}
    assert keys(await roles.effective_permissions(a.id)) == {"chatflow:read"}


async def test_cycle_resolves_to_empty_set(acme: Acme, db: AsyncSession) -> None:
    roles = RoleService(db)
    a = await roles.create_role(acme.organization_id, "a", ["chatflow:read"])
    b = await roles.create_role(acme.organization_id, "b", ["tool:read"], parent_role_id=a.id)

    # Corrupt the hierarchy behind the service's back
    a.parent_role_id = b.id
    await db.commit()

    assert await roles.effective_permissions(a.id) == frozenset()
    assert await roles.permissions_for_role(acme.organization_id, "b") == frozenset()


async def test_missing_parent_stops_the_walk(acme: Acme, db: AsyncSession) -> None:
    roles = RoleService(db)
    role = await roles.create_role(acme.organization_id, "orphan", ["tool:read"])
    role.parent_role_id = "does-not-exist"
    await db.commit()

    assert keys(await roles.effective_permissions(role.id)) == {"tool:read"}


async def test_update_rejects_cycle(acme: Acme, roles: RoleService) -> None:
    a = await roles.create_role(acme.organization_id, "a", ["chatflow:read"])
    b = await roles.create_role(acme.organization_id, "b", [], parent_role_id=a.id)

    with pytest.raises(ValidationError):
        await roles.update_role(a.id, parent_role_id=b.id)
    with pytest.raises(ValidationError):
        await roles.update_role(a.id, parent_role_id=a.id)


async def test_unknown_role_id(roles: RoleService, acme: Acme) -> None:
    with pytest.raises(NotFoundError):
        await roles.effective_permissions("nope")


async def test_permissions_for_role_resolves_builtin_and_custom(acme: Acme, roles: RoleService) -> None:
    await roles.create_role(acme.organization_id, "auditor", ["audit:read"])

    assert await roles.permissions_for_role(acme.organization_id, "admin") == PERMISSION_CATALOG
    assert keys(await roles.permissions_for_role(acme.organization_id, "auditor")) == {"audit:read"}
    assert await roles.permissions_for_role(acme.organization_id, "ghost") == frozenset()


# ============================================================================
# Administration
# ============================================================================


async def test_role_names_are_unique_and_not_builtin(acme: Acme, roles: RoleService) -> None:
    await roles.create_role(acme.organization_id, "editor", ["chatflow:update"])

    with pytest.raises(ConflictError):
        await roles.create_role(acme.organization_id, "editor", [])
    with pytest.raises(ConflictError):
        await roles.create_role(acme.organization_id, "Admin", [])
    with pytest.raises(ValidationError):
        await roles.create_role(acme.organization_id, "bad:name", [])


async def test_parent_must_belong_to_same_organization(
    acme: Acme,
    roles: RoleService,
    tenancy: TenancyService,
) -> None:
    globex = await tenancy.create_organization("Globex", "globex")
    foreign = await roles.create_role(globex.id, "foreign", ["tool:read"])

    with pytest.raises(NotFoundError):
        await roles.create_role(acme.organization_id, "child", [], parent_role_id=foreign.id)


async def test_delete_parent_role_conflicts(acme: Acme, roles: RoleService) -> None:
    parent = await roles.create_role(acme.organization_id, "parent", ["chatflow:read"])
    child = await roles.create_role(acme.organization_id, "child", [], parent_role_id=parent.id)

    with pytest.raises(ConflictError):
        await roles.delete_role(parent.id)

    await roles.delete_role(child.id)
    await roles.delete_role(parent.id)
    assert await roles.list_roles(acme.organization_id) == []


async def test_delete_assigned_role_conflicts(
    acme: Acme,
    roles: RoleService,
    tenancy: TenancyService,
) -> None:
    role = await roles.create_role(acme.organization_id, "editor", ["chatflow:update"])
    await tenancy.add_workspace_member(acme.workspace_id, acme.member, role="editor")

    with pytest.raises(ConflictError):
        await roles.delete_role(role.id)


async def test_membership_stores_custom_role_by_id(
    acme: Acme,
    roles: RoleService,
    tenancy: TenancyService,
) -> None:
    role = await roles.create_role(acme.organization_id, "editor", ["chatflow:update"])

    member = await tenancy.add_workspace_member(acme.workspace_id, acme.member, role="editor")

    assert member.role == role.id


async def test_renamed_role_keeps_its_members(
    acme: Acme,
    roles: RoleService,
    resolver: AuthorizationResolver,
    tenancy: TenancyService,
) -> None:
    member = Principal(user_id=acme.member, auth_method=AuthMethod.TOKEN)
    scope = TenantScope.workspace(acme.workspace_id)
    role = await roles.create_role(acme.organization_id, "editor", ["chatflow:update"])
    await tenancy.add_workspace_member(acme.workspace_id, acme.member, role="editor")
    assert await resolver.authorize(member, scope, "chatflow", "update") is Decision.ALLOW

    await roles.update_role(role.id, name="writer")

    assert await resolver.authorize(member, scope, "chatflow", "update") is Decision.ALLOW
    with pytest.raises(ConflictError):
        await roles.delete_role(role.id)

    # A new role under the old name is unrelated to existing members
    await roles.create_role(acme.organization_id, "editor", ["chatflow:delete"])
    assert await resolver.authorize(member, scope, "chatflow", "delete") is Decision.DENY


async def test_permission_edits(acme: Acme, roles: RoleService) -> None:
    role = await roles.create_role(acme.organization_id, "editor", ["chatflow:read"])

    await roles.add_role_permissions(role.id, ["chatflow:update", "chatflow:read"])
    assert set(role.permission_keys) == {"chatflow:read", "chatflow:update"}

    await roles.remove_role_permissions(role.id, ["chatflow:read"])
    assert set(role.permission_keys) == {"chatflow:update"}

    await roles.set_role_permissions(role.id, ["tool:read"])
    assert keys(await roles.effective_permissions(role.id)) == {"tool:read"}
    assert role.version == 4

    with pytest.raises(ValidationError):
        await roles.add_role_permissions(role.id, ["chatflow:fly"])


async def test_mutation_invalidates_role_and_decision_cache(
    acme: Acme,
    roles: RoleService,
    cache: CacheService,
) -> None:
    role = await roles.create_role(acme.organization_id, "editor", ["chatflow:read"])
    await roles.effective_permissions(role.id)
    assert await cache.get(role_key(acme.organization_id, role.id)) == ["chatflow:read"]

    decision = decision_key(acme.member, acme.organization_id, "organization", acme.organization_id, "chatflow", "update")
    await cache.set(decision, "deny")

    await roles.add_role_permissions(role.id, ["chatflow:update"])

    assert await cache.get(role_key(acme.organization_id, role.id)) is None
    assert await cache.get(decision) is None
    assert keys(await roles.effective_permissions(role.id)) == {"chatflow:read", "chatflow:update"}


async def test_role_hierarchy(acme: Acme, roles: RoleService) -> None:
    root = await roles.create_role(acme.organization_id, "root", ["tool:read"])
    await roles.create_role(acme.organization_id, "left", [], parent_role_id=root.id)
    await roles.create_role(acme.organization_id, "right", ["audit:read"], parent_role_id=root.id)

    tree = await roles.role_hierarchy(root.id)

    assert tree["name"] == "root"
    assert [child["name"] for child in tree["children"]] == ["left", "right"]
    assert tree["children"][1]["permissions"] == ["audit:read"]


# ============================================================================
# Templates
# ============================================================================


async def test_template_permissions_are_copied(acme: Acme, roles: RoleService) -> None:
    template = await roles.create_template("Support", ["chatflow:read", "tool:read"])
    role = await roles.create_role_from_template(template.id, acme.organization_id, name="support")

    await roles.update_template(template.id, permissions=["audit:read"])

    assert role.template_id == template.id
    assert keys(await roles.effective_permissions(role.id)) == {"chatflow:read", "tool:read"}


async def test_template_visibility_and_activity(
    acme: Acme,
    roles: RoleService,
    tenancy: TenancyService,
) -> None:
    globex = await tenancy.create_organization("Globex", "globex")
    private = await roles.create_template("Private", ["tool:read"], organization_id=globex.id)
    inactive = await roles.create_template("Old", ["tool:read"])
    await roles.update_template(inactive.id, is_active=False)

    with pytest.raises(NotFoundError):
        await roles.create_role_from_template(private.id, acme.organization_id)
    with pytest.raises(ValidationError):
        await roles.create_role_from_template(inactive.id, acme.organization_id)

    names = [t.name for t in await roles.list_templates(acme.organization_id)]
    assert names == ["Old"]


async def test_duplicate_template_conflicts(roles: RoleService, acme: Acme) -> None:
    await roles.create_template("Support", ["tool:read"])
    with pytest.raises(ConflictError):
        await roles.create_template("Support", ["audit:read"])
