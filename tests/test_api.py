from typing import AsyncIterator

import jwt
import pytest
import pytest_asyncio
from fastapi import APIRouter, Depends, FastAPI
from httpx import ASGITransport, AsyncClient

from flowguard.authz.dependencies import RequirePermission, RequireSystemAdmin
from flowguard.cache.service import CacheService
from flowguard.core.config import Settings
from flowguard.main import create_app

from tests.conftest import TOKEN_SECRET, Acme


def auth_header(user_id: str) -> dict[str, str]:
    token = jwt.encode({"sub": user_id}, TOKEN_SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def sample_router() -> APIRouter:
    router = APIRouter()

    @router.get(
        "/organizations/{organization_id}/chatflows",
        dependencies=[Depends(RequirePermission("chatflow", "read", tenant_type="organization"))],
    )
    async def list_chatflows(organization_id: str):
        return {"items": []}

    @router.delete(
        "/workspaces/{workspace_id}/chatflows/{chatflow_id}",
        dependencies=[
            Depends(
                RequirePermission(
                    "chatflow",
                    "delete",
                    tenant_type="workspace",
                    resource_id_param="chatflow_id",
                )
            )
        ],
    )
    async def delete_chatflow(workspace_id: str, chatflow_id: str):
        return {"deleted": chatflow_id}

    @router.get("/system/status", dependencies=[Depends(RequireSystemAdmin())])
    async def system_status():
        return {"ok": True}

    return router


@pytest.fixture()
def app(settings: Settings, database: None, cache: CacheService) -> FastAPI:
    """Application wired to the test database and cache (no lifespan under ASGITransport)."""
    app = create_app(settings)
    app.state.cache = cache
    app.state.http_client = None
    app.include_router(sample_router(), prefix="/api/v1")
    return app


@pytest_asyncio.fixture()
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


async def test_health(client: AsyncClient) -> None:
    response = await client.get("/api/v1/health")

    assert response.status_code == 200
    body = response.json()
    assert body["database"] == "healthy"
    assert body["cache"] == "local-only"
    assert body["status"] == "healthy"


async def test_me_requires_authentication(client: AsyncClient) -> None:
    response = await client.get("/api/v1/authz/me", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 401
    assert response.headers["X-Request-ID"] == "req-123"
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == "UNAUTHORIZED"
    assert body["meta"]["request_id"] == "req-123"


async def test_me_returns_principal_and_scope_permissions(client: AsyncClient, acme: Acme) -> None:
    response = await client.get(
        "/api/v1/authz/me",
        params={"tenant_type": "organization", "tenant_id": acme.organization_id},
        headers=auth_header(acme.member),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["principal"]["user_id"] == acme.member
    assert body["principal"]["auth_method"] == "token"
    assert "chatflow:read" in body["permissions"]
    assert "chatflow:delete" not in body["permissions"]


async def test_check(client: AsyncClient, acme: Acme) -> None:
    payload = {
        "resource_type": "chatflow",
        "action": "read",
        "tenant_type": "workspace",
        "tenant_id": acme.workspace_id,
    }

    denied = await client.post("/api/v1/authz/check", json=payload, headers=auth_header(acme.member))
    allowed = await client.post("/api/v1/authz/check", json=payload, headers=auth_header(acme.admin))

    assert denied.json() == {"decision": "deny", "allowed": False, "permission": "chatflow:read"}
    assert allowed.json()["allowed"] is True


async def test_check_rejects_unknown_action(client: AsyncClient, acme: Acme) -> None:
    response = await client.post(
        "/api/v1/authz/check",
        json={"resource_type": "chatflow", "action": "fly"},
        headers=auth_header(acme.member),
    )

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


async def test_require_permission_on_organization_route(client: AsyncClient, acme: Acme) -> None:
    path = f"/api/v1/organizations/{acme.organization_id}/chatflows"

    allowed = await client.get(path, headers=auth_header(acme.member))
    denied = await client.get(path, headers=auth_header("stranger"))

    assert allowed.status_code == 200
    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "PERMISSION_DENIED"
    assert denied.json()["error"]["permission"] == "chatflow:read"


async def test_require_permission_with_resource_override(
    client: AsyncClient,
    acme: Acme,
    acl,
) -> None:
    path = f"/api/v1/workspaces/{acme.workspace_id}/chatflows/cf-1"

    assert (await client.delete(path, headers=auth_header(acme.admin))).status_code == 200

    await acl.deny(acme.admin, "chatflow", "cf-1", "delete")

    assert (await client.delete(path, headers=auth_header(acme.admin))).status_code == 403
    other = f"/api/v1/workspaces/{acme.workspace_id}/chatflows/cf-2"
    assert (await client.delete(other, headers=auth_header(acme.admin))).status_code == 200


async def test_internal_and_system_admin_routes(client: AsyncClient) -> None:
    internal = await client.get("/api/v1/system/status", headers={"X-Request-From": "internal"})
    regular = await client.get("/api/v1/system/status", headers=auth_header("user1"))

    assert internal.status_code == 200
    assert regular.status_code == 403
    assert regular.json()["error"]["code"] == "SYSTEM_ADMIN_REQUIRED"
