"""
Two-tier permission and session cache.
"""

from flowguard.cache.service import CacheService, LocalCache, create_cache_service

__all__ = ["CacheService", "LocalCache", "create_cache_service"]
