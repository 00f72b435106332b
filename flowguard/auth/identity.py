"""
Identity administration: user profiles and API keys.

Both services invalidate what the authentication chain caches about a
user, so a deactivation or an admin grant takes effect on the next
request.
"""

from datetime import datetime
from typing import Optional, Tuple

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from flowguard.cache.keys import session_key, user_decisions_pattern
from flowguard.cache.service import CacheService
from flowguard.core.exceptions import NotFoundError, ValidationError
from flowguard.core.repository import Repository
from flowguard.core.security import APIKeyGenerator
from flowguard.models import ApiKey, UserProfile

logger = structlog.get_logger(__name__)


class ProfileService:
    """Local profile records for externally issued user ids."""

    def __init__(self, db: AsyncSession, cache: Optional[CacheService] = None):
        self.db = db
        self.cache = cache
        self.profiles = Repository(db, UserProfile)

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        return await self.profiles.get(user_id)

    async def upsert_profile(
        self,
        user_id: str,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        is_system_admin: Optional[bool] = None,
        is_active: Optional[bool] = None,
    ) -> UserProfile:
        """Create the profile or update the given fields."""
        profile = await self.profiles.get(user_id)
        if profile is None:
            profile = UserProfile(
                user_id=user_id,
                email=email,
                display_name=display_name,
                is_system_admin=bool(is_system_admin),
                is_active=True if is_active is None else is_active,
            )
            await self.profiles.add(profile)
        else:
            if email is not None:
                profile.email = email
            if display_name is not None:
                profile.display_name = display_name
            if is_system_admin is not None:
                profile.is_system_admin = is_system_admin
            if is_active is not None:
                profile.is_active = is_active

        await self.profiles.save()
        await self._invalidate(user_id)

        logger.info(
            "User profile saved",
            user_id=user_id,
            is_system_admin=profile.is_system_admin,
            is_active=profile.is_active,
        )
        return profile

    async def deactivate(self, user_id: str) -> UserProfile:
        return await self.upsert_profile(user_id, is_active=False)

    async def _invalidate(self, user_id: str) -> None:
        if self.cache is None:
            return
        await self.cache.delete(session_key(user_id))
        await self.cache.delete_pattern(user_decisions_pattern(user_id))


class ApiKeyService:
    """Issue, list and revoke API keys. The full key is only returned once."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.keys = Repository(db, ApiKey)

    async def issue(
        self,
        key_name: str,
        user_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Tuple[ApiKey, str]:
        """
        Create a key.

        Returns:
            (record, full_key). Only the hash of the key is stored.
        """
        key_name = key_name.strip()
        if not key_name:
            raise ValidationError("API key name is required")

        full_key, prefix, key_hash = APIKeyGenerator.generate()
        record = ApiKey(
            key_name=key_name,
            key_prefix=prefix,
            key_hash=key_hash,
            user_id=user_id,
            expires_at=expires_at,
            enabled=True,
        )
        await self.keys.add(record)
        await self.keys.save()

        logger.info("API key issued", api_key_id=record.id, key_prefix=prefix, user_id=user_id)
        return record, full_key

    async def get(self, api_key_id: str) -> ApiKey:
        record = await self.keys.get(api_key_id)
        if record is None:
            raise NotFoundError(f"API key '{api_key_id}' not found")
        return record

    async def list_for_user(self, user_id: str) -> list[ApiKey]:
        return await self.keys.find(
            ApiKey.user_id == user_id,
            order_by=(ApiKey.created_at.desc(),),
        )

    async def set_enabled(self, api_key_id: str, enabled: bool) -> ApiKey:
        record = await self.get(api_key_id)
        record.enabled = enabled
        await self.keys.save()
        logger.info("API key updated", api_key_id=api_key_id, enabled=enabled)
        return record

    async def revoke(self, api_key_id: str) -> None:
        record = await self.get(api_key_id)
        await self.keys.delete(record)
        await self.keys.save()
        logger.info("API key revoked", api_key_id=api_key_id, key_prefix=record.key_prefix)
