"""
Authentication chain.

Strategies are tried in a fixed order and the first one that resolves an
identity wins:

    token -> api key -> basic

Basic auth is skipped when token verification is the primary method.
Requests marked as internal bypass the chain unless internal requests are
configured to authenticate like everyone else.
"""

from typing import Optional, Sequence

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from flowguard.auth.principal import AuthRequest, Identity, Principal
from flowguard.auth.strategies import (
    ApiKeyStrategy,
    AuthStrategy,
    BasicAuthStrategy,
    TokenStrategy,
)
from flowguard.cache.keys import session_key
from flowguard.cache.service import CacheService
from flowguard.core.config import AuthSettings
from flowguard.core.exceptions import AuthenticationFailure
from flowguard.core.repository import Repository
from flowguard.models import UserProfile

logger = structlog.get_logger(__name__)

INTERNAL_MARKER = "internal"


def build_strategies(
    db: AsyncSession,
    settings: AuthSettings,
    http_client: Optional[httpx.AsyncClient] = None,
) -> list[AuthStrategy]:
    """Enabled strategies in evaluation order."""
    strategies: list[AuthStrategy] = []

    if settings.token_enabled:
        strategies.append(TokenStrategy(settings, http_client=http_client))

    if settings.api_key_enabled:
        strategies.append(ApiKeyStrategy(db, settings))

    if settings.basic_enabled and not (settings.token_enabled and settings.token_primary):
        strategies.append(BasicAuthStrategy(settings))

    return strategies


class AuthenticationChain:
    """Resolves the Principal for one request."""

    def __init__(
        self,
        db: AsyncSession,
        settings: AuthSettings,
        cache: Optional[CacheService] = None,
        strategies: Optional[Sequence[AuthStrategy]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.db = db
        self.settings = settings
        self.cache = cache
        self.profiles = Repository(db, UserProfile)
        if strategies is None:
            strategies = build_strategies(db, settings, http_client=http_client)
        self.strategies = list(strategies)

    def is_internal(self, request: AuthRequest) -> bool:
        if not self.settings.internal_enabled:
            return False
        marker = request.header(self.settings.internal_header)
        return bool(marker) and marker.strip().lower() == INTERNAL_MARKER

    async def authenticate(self, request: AuthRequest) -> Principal:
        """
        Run the chain.

        Raises:
            AuthenticationFailure: if no strategy resolves an identity, or
                the resolved user is deactivated.
        """
        if self.is_internal(request) and not self.settings.internal_require_auth:
            logger.debug("Internal request, skipping authentication", path=request.path)
            return Principal.internal()

        for strategy in self.strategies:
            identity = await strategy.authenticate(request)
            if identity is None:
                continue
            logger.debug(
                "Request authenticated",
                strategy=strategy.name,
                user_id=identity.user_id,
                path=request.path,
            )
            return await self._complete(identity)

        logger.info("Authentication failed", method=request.method, path=request.path)
        raise AuthenticationFailure("Authentication required")

    async def _complete(self, identity: Identity) -> Principal:
        is_system_admin = identity.is_system_admin
        email = identity.email

        if identity.user_id:
            profile = await self._load_profile(identity.user_id)
            if profile is not None:
                if not profile["is_active"]:
                    logger.warning("Deactivated user rejected", user_id=identity.user_id)
                    raise AuthenticationFailure("User account is deactivated")
                is_system_admin = is_system_admin or profile["is_system_admin"]
                email = email or profile["email"]

        return Principal(
            user_id=identity.user_id,
            auth_method=identity.auth_method,
            api_key_id=identity.api_key_id,
            is_system_admin=is_system_admin,
            email=email,
        )

    async def _load_profile(self, user_id: str) -> Optional[dict]:
        """Profile flags for a user; None means an ordinary active user."""
        key = session_key(user_id)
        if self.cache is not None:
            cached = await self.cache.get(key)
            if cached is not None:
                return cached or None

        row = await self.profiles.get(user_id)
        profile = None
        if row is not None:
            profile = {
                "is_system_admin": row.is_system_admin,
                "is_active": row.is_active,
                "email": row.email,
            }

        if self.cache is not None:
            # Empty dict marks "no profile" so misses are cached too
            await self.cache.set(key, profile or {})
        return profile
