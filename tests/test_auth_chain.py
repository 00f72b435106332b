import base64
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import jwt
import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from flowguard.auth.chain import AuthenticationChain, build_strategies
from flowguard.auth.identity import ApiKeyService, ProfileService
from flowguard.auth.principal import AuthMethod, AuthRequest
from flowguard.cache.keys import session_key
from flowguard.cache.service import CacheService
from flowguard.core.config import AuthSettings
from flowguard.core.exceptions import AuthenticationFailure

from tests.conftest import BASIC_PASSWORD, BASIC_USERNAME, TOKEN_SECRET

UTC = timezone.utc


def auth_settings(**overrides: Any) -> AuthSettings:
    values = {
        "token_secret": TOKEN_SECRET,
        "basic_username": BASIC_USERNAME,
        "basic_password": BASIC_PASSWORD,
    }
    values.update(overrides)
    return AuthSettings(_env_file=None, **values)


def make_token(secret: str = TOKEN_SECRET, **claims: Any) -> str:
    payload = {"sub": "user1", "email": "user1@example.com"}
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


def bearer(token: str) -> AuthRequest:
    return AuthRequest(method="GET", path="/api/v1/authz/me", headers={"Authorization": f"Bearer {token}"})


def basic(username: str, password: str) -> AuthRequest:
    encoded = base64.b64encode(f"{username}:{password}".encode()).decode()
    return AuthRequest(headers={"Authorization": f"Basic {encoded}"})


# ============================================================================
# Ordering
# ============================================================================


def test_strategy_order(db: AsyncSession) -> None:
    names = [s.name for s in build_strategies(db, auth_settings())]
    assert names == ["token", "api_key", "basic"]


def test_token_primary_excludes_basic(db: AsyncSession) -> None:
    names = [s.name for s in build_strategies(db, auth_settings(token_primary=True))]
    assert names == ["token", "api_key"]


def test_basic_requires_both_credentials(db: AsyncSession) -> None:
    names = [s.name for s in build_strategies(db, auth_settings(basic_password="", api_key_enabled=False))]
    assert names == ["token"]


# ============================================================================
# Token
# ============================================================================


async def test_local_jwt(db: AsyncSession) -> None:
    chain = AuthenticationChain(db, auth_settings())

    principal = await chain.authenticate(bearer(make_token()))

    assert principal.user_id == "user1"
    assert principal.auth_method is AuthMethod.TOKEN
    assert principal.email == "user1@example.com"
    assert not principal.is_system_admin


@pytest.mark.parametrize(
    "token",
    [
        make_token(secret="another-secret-key-that-is-long-enough"),
        make_token(exp=datetime.now(UTC) - timedelta(minutes=5)),
        "not-a-jwt",
    ],
)
async def test_rejected_tokens_fail_authentication(db: AsyncSession, token: str) -> None:
    chain = AuthenticationChain(db, auth_settings())

    with pytest.raises(AuthenticationFailure):
        await chain.authenticate(bearer(token))


async def test_token_audience(db: AsyncSession) -> None:
    chain = AuthenticationChain(db, auth_settings(token_audience="flowguard"))

    assert (await chain.authenticate(bearer(make_token(aud="flowguard")))).user_id == "user1"
    with pytest.raises(AuthenticationFailure):
        await chain.authenticate(bearer(make_token(aud="someone-else")))


async def test_remote_verification(db: AsyncSession) -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["Authorization"])
        return httpx.Response(200, json={"id": "user7", "email": "user7@example.com"})

    settings = auth_settings(token_userinfo_url="https://idp.example.com/userinfo", token_secret="")
    token = make_token(secret="issuer-only-secret-unknown-to-flowguard")
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        chain = AuthenticationChain(db, settings, http_client=client)
        principal = await chain.authenticate(bearer(token))

    assert principal.user_id == "user7"
    assert principal.email == "user7@example.com"
    assert seen == [f"Bearer {token}"]


@pytest.mark.parametrize(
    "respond",
    [
        lambda request: httpx.Response(401, json={"detail": "invalid token"}),
        lambda request: httpx.Response(200, json={"email": "no-id@example.com"}),
        lambda request: httpx.Response(200, text="<html>"),
    ],
)
async def test_remote_rejections_decline(db: AsyncSession, respond) -> None:
    settings = auth_settings(token_userinfo_url="https://idp.example.com/userinfo")
    async with httpx.AsyncClient(transport=httpx.MockTransport(respond)) as client:
        chain = AuthenticationChain(db, settings, http_client=client)
        with pytest.raises(AuthenticationFailure):
            await chain.authenticate(bearer(make_token()))


async def test_remote_timeout_declines_to_next_strategy(db: AsyncSession) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("identity provider too slow", request=request)

    settings = auth_settings(token_userinfo_url="https://idp.example.com/userinfo")
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        chain = AuthenticationChain(db, settings, http_client=client)

        with pytest.raises(AuthenticationFailure):
            await chain.authenticate(bearer(make_token()))

        # Basic auth still works behind a timed-out token strategy
        principal = await chain.authenticate(basic(BASIC_USERNAME, BASIC_PASSWORD))
        assert principal.auth_method is AuthMethod.BASIC


# ============================================================================
# API keys
# ============================================================================


async def test_api_key_header_and_bearer(db: AsyncSession) -> None:
    record, full_key = await ApiKeyService(db).issue("ci", user_id="user3")
    chain = AuthenticationChain(db, auth_settings())

    via_header = await chain.authenticate(AuthRequest(headers={"X-API-Key": full_key}))
    via_bearer = await chain.authenticate(bearer(full_key))

    for principal in (via_header, via_bearer):
        assert principal.auth_method is AuthMethod.API_KEY
        assert principal.user_id == "user3"
        assert principal.api_key_id == record.id

    await db.refresh(record)
    assert record.last_used_at is not None


async def test_api_key_wrong_secret(db: AsyncSession) -> None:
    _, full_key = await ApiKeyService(db).issue("ci", user_id="user3")
    chain = AuthenticationChain(db, auth_settings())
    forged = full_key[:-4] + "0000" if not full_key.endswith("0000") else full_key[:-4] + "1111"

    with pytest.raises(AuthenticationFailure):
        await chain.authenticate(AuthRequest(headers={"X-API-Key": forged}))


async def test_api_key_require_user(db: AsyncSession) -> None:
    _, full_key = await ApiKeyService(db).issue("service")
    request = AuthRequest(headers={"X-API-Key": full_key})

    principal = await AuthenticationChain(db, auth_settings()).authenticate(request)
    assert principal.user_id is None
    assert principal.api_key_id is not None

    with pytest.raises(AuthenticationFailure):
        await AuthenticationChain(db, auth_settings(api_key_require_user=True)).authenticate(request)


async def test_disabled_and_expired_keys_decline(db: AsyncSession) -> None:
    keys = ApiKeyService(db)
    disabled, disabled_key = await keys.issue("old", user_id="user3")
    await keys.set_enabled(disabled.id, False)
    _, expired_key = await keys.issue("expired", user_id="user3", expires_at=datetime.now(UTC) - timedelta(days=1))
    chain = AuthenticationChain(db, auth_settings())

    for key in (disabled_key, expired_key):
        with pytest.raises(AuthenticationFailure):
            await chain.authenticate(AuthRequest(headers={"X-API-Key": key}))


async def test_revoked_key_declines(db: AsyncSession) -> None:
    keys = ApiKeyService(db)
    record, full_key = await keys.issue("temp", user_id="user3")
    assert [k.id for k in await keys.list_for_user("user3")] == [record.id]

    await keys.revoke(record.id)

    assert await keys.list_for_user("user3") == []
    with pytest.raises(AuthenticationFailure):
        await AuthenticationChain(db, auth_settings()).authenticate(AuthRequest(headers={"X-API-Key": full_key}))


# ============================================================================
# Basic
# ============================================================================


async def test_basic_credentials(db: AsyncSession) -> None:
    chain = AuthenticationChain(db, auth_settings())

    principal = await chain.authenticate(basic(BASIC_USERNAME, BASIC_PASSWORD))

    assert principal.auth_method is AuthMethod.BASIC
    assert principal.user_id == BASIC_USERNAME
    assert principal.is_system_admin

    with pytest.raises(AuthenticationFailure):
        await chain.authenticate(basic(BASIC_USERNAME, "wrong"))


async def test_basic_skipped_when_token_is_primary(db: AsyncSession) -> None:
    chain = AuthenticationChain(db, auth_settings(token_primary=True))

    with pytest.raises(AuthenticationFailure):
        await chain.authenticate(basic(BASIC_USERNAME, BASIC_PASSWORD))


# ============================================================================
# Internal requests
# ============================================================================


async def test_internal_bypass(db: AsyncSession) -> None:
    request = AuthRequest(headers={"X-Request-From": "internal"})

    principal = await AuthenticationChain(db, auth_settings()).authenticate(request)

    assert principal.is_internal
    assert principal.is_system_admin
    assert principal.auth_method is AuthMethod.INTERNAL


async def test_internal_marker_needs_auth_when_configured(db: AsyncSession) -> None:
    marker = {"X-Request-From": "internal"}

    with pytest.raises(AuthenticationFailure):
        await AuthenticationChain(db, auth_settings(internal_require_auth=True)).authenticate(AuthRequest(headers=marker))
    with pytest.raises(AuthenticationFailure):
        await AuthenticationChain(db, auth_settings(internal_enabled=False)).authenticate(AuthRequest(headers=marker))

    headers = dict(marker, Authorization=f"Bearer {make_token()}")
    principal = await AuthenticationChain(db, auth_settings(internal_require_auth=True)).authenticate(
        AuthRequest(headers=headers)
    )
    assert principal.user_id == "user1"
    assert not principal.is_internal


async def test_no_credentials(db: AsyncSession) -> None:
    with pytest.raises(AuthenticationFailure):
        await AuthenticationChain(db, auth_settings()).authenticate(AuthRequest())


# ============================================================================
# Profiles
# ============================================================================


async def test_profile_flags_complete_the_principal(db: AsyncSession, cache: CacheService) -> None:
    profiles = ProfileService(db, cache)
    await profiles.upsert_profile("user1", email="ops@example.com", is_system_admin=True)
    chain = AuthenticationChain(db, auth_settings(), cache=cache)

    principal = await chain.authenticate(bearer(make_token(email=None)))

    assert principal.is_system_admin
    assert principal.email == "ops@example.com"
    assert (await cache.get(session_key("user1")))["is_system_admin"] is True


async def test_deactivated_user_fails(db: AsyncSession, cache: CacheService) -> None:
    chain = AuthenticationChain(db, auth_settings(), cache=cache)
    profiles = ProfileService(db, cache)

    # Missing profile is an ordinary active user, and the miss is cached
    assert (await chain.authenticate(bearer(make_token()))).user_id == "user1"
    assert await cache.get(session_key("user1")) == {}

    await profiles.deactivate("user1")

    with pytest.raises(AuthenticationFailure):
        await chain.authenticate(bearer(make_token()))
