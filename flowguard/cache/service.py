"""
Two-tier cache for authorization decisions and session lookups.

The local tier is an in-process LRU with per-entry expiry. The optional
shared tier is Redis. The cache is advisory: every shared-tier failure is
logged and the operation continues against the local tier only.
"""

import json
import re
import time
from collections import OrderedDict
from typing import Any, Optional, Tuple

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from flowguard.core.config import Settings

logger = structlog.get_logger(__name__)


class LocalCache:
    """Bounded in-process cache with LRU eviction and TTL expiry."""

    def __init__(self, max_items: int = 1000, default_ttl: float = 300):
        self.max_items = max_items
        self.default_ttl = default_ttl
        self._data: OrderedDict[str, Tuple[float, Any]] = OrderedDict()

    def get(self, key: str) -> Tuple[bool, Any]:
        """Return (hit, value)."""
        item = self._data.get(key)
        if item is None:
            return False, None
        expires_at, value = item
        if expires_at <= time.monotonic():
            self._data.pop(key, None)
            return False, None
        # LRU touch
        self._data.move_to_end(key)
        return True, value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        self._data[key] = (time.monotonic() + ttl, value)
        self._data.move_to_end(key)
        while len(self._data) > self.max_items:
            self._data.popitem(last=False)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        keys = [key for key in self._data if key.startswith(prefix)]
        for key in keys:
            del self._data[key]
        return len(keys)

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


def pattern_prefix(pattern: str) -> str:
    """
    Validate a trailing-wildcard pattern and return its literal prefix.

    `role:org-1:*` -> `role:org-1:`. Everything before the trailing `*` is
    literal, so ids containing glob characters are matched as-is.
    """
    if not pattern.endswith("*"):
        raise ValueError(f"Cache pattern must end with '*': {pattern!r}")
    return pattern[:-1]


_GLOB_SPECIAL = re.compile(r"([\\*?\[\]])")


def redis_match(prefix: str) -> str:
    """SCAN MATCH pattern for every key starting with a literal prefix."""
    return _GLOB_SPECIAL.sub(r"\\\1", prefix) + "*"


class CacheService:
    """
    Local-first two-tier cache.

    Reads check the local tier, then the shared tier (a shared hit fills
    the local tier). Writes and deletes go to both tiers.
    """

    def __init__(
        self,
        local_ttl: int = 300,
        local_max_items: int = 1000,
        shared_ttl: int = 1800,
        shared: Optional[Redis] = None,
    ):
        self.local = LocalCache(max_items=local_max_items, default_ttl=local_ttl)
        self.local_ttl = local_ttl
        self.shared_ttl = shared_ttl
        self.shared = shared

    @property
    def shared_enabled(self) -> bool:
        return self.shared is not None

    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on a miss."""
        hit, value = self.local.get(key)
        if hit:
            return value

        if self.shared is None:
            return None

        try:
            raw = await self.shared.get(key)
        except (RedisError, OSError) as exc:
            self._log_shared_failure("get", exc, key=key)
            return None

        if raw is None:
            return None

        try:
            value = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding undecodable shared cache entry", key=key)
            return None

        self.local.set(key, value, self.local_ttl)
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """
        Store a JSON-serializable value in both tiers.

        An explicit ttl applies to both tiers; otherwise each tier uses its
        own default.
        """
        self.local.set(key, value, ttl if ttl is not None else self.local_ttl)

        if self.shared is None:
            return

        try:
            await self.shared.set(
                key,
                json.dumps(value),
                ex=ttl if ttl is not None else self.shared_ttl,
            )
        except (RedisError, OSError) as exc:
            self._log_shared_failure("set", exc, key=key)

    async def delete(self, key: str) -> None:
        self.local.delete(key)

        if self.shared is None:
            return

        try:
            await self.shared.delete(key)
        except (RedisError, OSError) as exc:
            self._log_shared_failure("delete", exc, key=key)

    async def delete_pattern(self, pattern: str) -> int:
        """
        Delete every key matching a trailing-wildcard pattern.

        Returns the number of keys removed from the local tier plus the
        number removed from the shared tier.
        """
        prefix = pattern_prefix(pattern)
        removed = self.local.delete_prefix(prefix)

        if self.shared is None:
            return removed

        try:
            async for key in self.shared.scan_iter(match=redis_match(prefix), count=500):
                removed += await self.shared.delete(key)
        except (RedisError, OSError) as exc:
            self._log_shared_failure("delete_pattern", exc, pattern=pattern)

        logger.debug("Cache pattern invalidated", pattern=pattern, removed=removed)
        return removed

    async def clear(self) -> None:
        self.local.clear()

        if self.shared is None:
            return

        try:
            await self.shared.flushdb()
        except (RedisError, OSError) as exc:
            self._log_shared_failure("clear", exc)

    async def close(self) -> None:
        """Release the shared connection pool."""
        self.local.clear()
        if self.shared is None:
            return
        try:
            await self.shared.aclose()
        except (RedisError, OSError) as exc:
            self._log_shared_failure("close", exc)
        self.shared = None

    def _log_shared_failure(self, operation: str, exc: Exception, **context: Any) -> None:
        logger.error(
            "Shared cache operation failed, continuing with local tier",
            operation=operation,
            error=str(exc),
            **context,
        )


async def create_cache_service(settings: Settings) -> CacheService:
    """
    Build the cache for the process.

    When the shared tier is enabled but Redis does not answer a ping, the
    service starts local-only.
    """
    shared: Optional[Redis] = None

    if settings.cache.shared_enabled:
        shared = Redis.from_url(
            settings.redis.dsn,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.redis.pool_size,
            socket_timeout=settings.redis.socket_timeout,
        )
        try:
            await shared.ping()
            logger.info("Shared cache tier connected")
        except (RedisError, OSError) as exc:
            logger.warning("Shared cache tier unavailable, running local-only", error=str(exc))
            await shared.aclose()
            shared = None

    return CacheService(
        local_ttl=settings.cache.local_ttl,
        local_max_items=settings.cache.local_max_items,
        shared_ttl=settings.cache.shared_ttl,
        shared=shared,
    )
