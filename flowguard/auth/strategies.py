"""
Authentication strategies.

Each strategy inspects a request and either resolves an Identity or
declines by returning None. Declining is never an error: the chain simply
moves on to the next strategy.
"""

import base64
import binascii
from datetime import datetime, timezone
from typing import Optional, Protocol

import httpx
import jwt
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from flowguard.auth.principal import AuthMethod, AuthRequest, Identity
from flowguard.core.config import AuthSettings
from flowguard.core.exceptions import BackendUnavailable
from flowguard.core.repository import Repository
from flowguard.core.security import APIKeyGenerator, constant_time_equals
from flowguard.models import ApiKey

logger = structlog.get_logger(__name__)

UTC = timezone.utc


class AuthStrategy(Protocol):
    name: str

    async def authenticate(self, request: AuthRequest) -> Optional[Identity]:
        ...


def _looks_like_jwt(token: str) -> bool:
    parts = token.split(".")
    return len(parts) == 3 and all(parts)


class TokenStrategy:
    """
    Bearer JWT verification.

    Verifies locally with the shared secret, or remotely against a userinfo
    endpoint when one is configured. Remote verification is bounded by a
    timeout; timeouts and HTTP failures decline.
    """

    name = "token"

    def __init__(self, settings: AuthSettings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.http_client = http_client

    async def authenticate(self, request: AuthRequest) -> Optional[Identity]:
        token = request.bearer_token
        if not token or APIKeyGenerator.looks_like_key(token) or not _looks_like_jwt(token):
            return None

        if self.settings.token_userinfo_url:
            return await self._verify_remote(token)
        return self._verify_local(token)

    def _verify_local(self, token: str) -> Optional[Identity]:
        if not self.settings.token_secret:
            logger.debug("Token strategy has no secret configured, declining")
            return None

        audience = self.settings.audience_list
        try:
            claims = jwt.decode(
                token,
                self.settings.token_secret,
                algorithms=self.settings.algorithms_list,
                audience=audience,
                options={"require": ["sub"], "verify_aud": audience is not None},
            )
        except jwt.PyJWTError as exc:
            logger.info("Bearer token rejected", reason=str(exc))
            return None

        return Identity(
            auth_method=AuthMethod.TOKEN,
            user_id=str(claims["sub"]),
            email=claims.get("email"),
            claims=claims,
        )

    async def _verify_remote(self, token: str) -> Optional[Identity]:
        url = self.settings.token_userinfo_url
        headers = {"Authorization": f"Bearer {token}"}
        timeout = httpx.Timeout(self.settings.token_timeout)

        try:
            if self.http_client is not None:
                response = await self.http_client.get(url, headers=headers, timeout=timeout)
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.get(url, headers=headers)
        except httpx.TimeoutException:
            logger.warning("Identity provider timed out, declining", url=url)
            return None
        except httpx.HTTPError as exc:
            logger.warning("Identity provider unreachable, declining", url=url, error=str(exc))
            return None

        if response.status_code != 200:
            logger.info("Identity provider rejected token", status_code=response.status_code)
            return None

        try:
            data = response.json()
        except ValueError:
            logger.warning("Identity provider returned invalid JSON", url=url)
            return None

        if not isinstance(data, dict):
            return None
        user_id = data.get("id") or data.get("sub")
        if not user_id:
            return None

        return Identity(
            auth_method=AuthMethod.TOKEN,
            user_id=str(user_id),
            email=data.get("email"),
            claims=data,
        )


class ApiKeyStrategy:
    """
    API key lookup.

    Reads the key from the configured header or from a Bearer token of the
    form `sk-<prefix>-<secret>`, finds it by prefix and verifies the hash.
    """

    name = "api_key"

    def __init__(self, db: AsyncSession, settings: AuthSettings):
        self.db = db
        self.settings = settings
        self.keys = Repository(db, ApiKey)

    async def authenticate(self, request: AuthRequest) -> Optional[Identity]:
        api_key = request.header(self.settings.api_key_header) or request.bearer_token
        if not api_key:
            return None

        prefix = APIKeyGenerator.get_prefix(api_key)
        if not prefix:
            return None

        record = await self.keys.find_one(ApiKey.key_prefix == prefix)
        if record is None or not APIKeyGenerator.verify(api_key, record.key_hash):
            logger.info("Invalid API key", key_prefix=prefix)
            return None

        if not record.enabled:
            logger.info("Disabled API key presented", key_prefix=prefix)
            return None

        if record.expires_at is not None and _aware(record.expires_at) < datetime.now(UTC):
            logger.info("Expired API key presented", key_prefix=prefix)
            return None

        if self.settings.api_key_require_user and not record.user_id:
            logger.info("API key has no associated user, declining", key_prefix=prefix)
            return None

        await self._update_last_used(record)

        return Identity(
            auth_method=AuthMethod.API_KEY,
            user_id=record.user_id,
            api_key_id=record.id,
        )

    async def _update_last_used(self, record: ApiKey) -> None:
        """Stamp last_used_at; failures do not fail the request."""
        record.last_used_at = datetime.now(UTC)
        try:
            await self.keys.save()
        except BackendUnavailable:
            logger.warning("Could not record API key usage", api_key_id=record.id)


class BasicAuthStrategy:
    """Static username/password credential from configuration."""

    name = "basic"

    def __init__(self, settings: AuthSettings):
        self.settings = settings

    async def authenticate(self, request: AuthRequest) -> Optional[Identity]:
        if not self.settings.basic_enabled:
            return None

        value = request.header("authorization")
        if not value:
            return None
        scheme, _, encoded = value.partition(" ")
        if scheme.lower() != "basic" or not encoded:
            return None

        try:
            decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return None

        username, sep, password = decoded.partition(":")
        if not sep:
            return None

        username_ok = constant_time_equals(username, self.settings.basic_username)
        password_ok = constant_time_equals(password, self.settings.basic_password)
        if not (username_ok and password_ok):
            logger.info("Static credentials rejected")
            return None

        return Identity(
            auth_method=AuthMethod.BASIC,
            user_id=username,
            is_system_admin=self.settings.basic_system_admin,
        )


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
