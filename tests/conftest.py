"""Shared pytest fixtures."""

import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncSession

from flowguard.authz.acl import ResourcePermissionService
from flowguard.authz.resolver import AuthorizationResolver
from flowguard.authz.roles import RoleService
from flowguard.cache.service import CacheService
from flowguard.core.config import (
    AuthSettings,
    CacheSettings,
    DatabaseSettings,
    LogSettings,
    Settings,
)
from flowguard.core.database import close_db, get_session_factory, init_db, setup_database
from flowguard.tenancy.service import TenancyService

TOKEN_SECRET = "test-secret-key-for-tests-please-change"
BASIC_USERNAME = "admin"
BASIC_PASSWORD = "admin-password"


def redis_glob(pattern: str) -> "re.Pattern[str]":
    """Compile a Redis glob: `*`, `?` and backslash escapes."""
    parts = []
    chars = iter(pattern)
    for ch in chars:
        if ch == "\\":
            parts.append(re.escape(next(chars, "\\")))
        elif ch == "*":
            parts.append(".*")
        elif ch == "?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts), re.DOTALL)


class FakeRedis:
    """In-memory stand-in for the subset of redis.asyncio.Redis the cache uses."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.expiries: dict[str, Optional[int]] = {}
        self.closed = False

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        self.data[key] = value
        self.expiries[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.expiries.pop(key, None)
        return removed

    async def scan_iter(self, match: str = "*", count: int = 10) -> AsyncIterator[str]:
        matcher = redis_glob(match)
        for key in list(self.data):
            if matcher.fullmatch(key):
                yield key

    async def flushdb(self) -> bool:
        self.data.clear()
        self.expiries.clear()
        return True

    async def aclose(self) -> None:
        self.closed = True


class BrokenRedis(FakeRedis):
    """Shared tier whose every call fails like a dropped connection."""

    def _fail(self, *args: Any, **kwargs: Any) -> Any:
        raise RedisConnectionError("Connection refused")

    async def ping(self) -> bool:
        self._fail()

    async def get(self, key: str) -> Optional[str]:
        self._fail()

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        self._fail()

    async def delete(self, *keys: str) -> int:
        self._fail()

    async def scan_iter(self, match: str = "*", count: int = 10) -> AsyncIterator[str]:
        self._fail()
        yield ""

    async def flushdb(self) -> bool:
        self._fail()


def build_settings(database_url: str, **auth: Any) -> Settings:
    """Settings isolated from the environment and any .env file."""
    auth_values = {
        "token_secret": TOKEN_SECRET,
        "basic_username": BASIC_USERNAME,
        "basic_password": BASIC_PASSWORD,
    }
    auth_values.update(auth)
    return Settings(
        _env_file=None,
        database=DatabaseSettings(_env_file=None, url=database_url),
        cache=CacheSettings(_env_file=None),
        auth=AuthSettings(_env_file=None, **auth_values),
        log=LogSettings(_env_file=None, format="text", requests=False),
    )


@pytest.fixture()
def database_url(tmp_path) -> str:
    """Provide a file-backed SQLite database URL for one test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'flowguard.sqlite'}"


@pytest.fixture()
def settings(database_url: str) -> Settings:
    return build_settings(database_url)


@pytest_asyncio.fixture()
async def database(settings: Settings) -> AsyncIterator[None]:
    setup_database(settings.database)
    await init_db()
    yield
    await close_db()


@pytest_asyncio.fixture()
async def db(database: None) -> AsyncIterator[AsyncSession]:
    async with get_session_factory()() as session:
        yield session


@pytest.fixture()
def cache() -> CacheService:
    return CacheService(local_ttl=300, local_max_items=1000, shared_ttl=1800)


@pytest.fixture()
def tenancy(db: AsyncSession, cache: CacheService) -> TenancyService:
    return TenancyService(db, cache)


@pytest.fixture()
def roles(db: AsyncSession, cache: CacheService) -> RoleService:
    return RoleService(db, cache)


@pytest.fixture()
def acl(db: AsyncSession, cache: CacheService) -> ResourcePermissionService:
    return ResourcePermissionService(db, cache)


@pytest.fixture()
def resolver(db: AsyncSession, cache: CacheService) -> AuthorizationResolver:
    return AuthorizationResolver(db, cache)


@dataclass(frozen=True)
class Acme:
    organization_id: str
    workspace_id: str
    admin: str
    member: str


@pytest_asyncio.fixture()
async def acme(tenancy: TenancyService) -> Acme:
    """Organization "acme" (admin user1) with workspace "eng"; user2 is an org member only."""
    organization = await tenancy.create_organization("Acme", "acme", created_by="user1")
    workspace = await tenancy.create_workspace(organization.id, "Engineering", "eng")
    await tenancy.add_organization_member(organization.id, "user2", role="member")
    return Acme(
        organization_id=organization.id,
        workspace_id=workspace.id,
        admin="user1",
        member="user2",
    )
