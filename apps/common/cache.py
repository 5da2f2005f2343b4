"""
Caching utilities for the back-office platform.

Thin service over Django's cache framework:
- Versioned, prefixed keys
- Per-alias caches (bounded locmem in development, Redis or DB in production)
- Get-or-compute helper for read-through snapshots
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypeVar, cast

from django.conf import settings
from django.core.cache import caches

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Cache timeout constants (seconds)
CACHE_TIMEOUT_MEDIUM = 300  # 5 minutes


class CacheService:
    """
    Centralized cache service bound to one cache alias.

    Provides consistent caching patterns across the application with:
    - Automatic cache key generation
    - Cache versioning for invalidation
    - Debug logging of hits and misses
    """

    def __init__(self, cache_alias: str = "default", namespace: str = "") -> None:
        self._cache = caches[cache_alias]
        self._version = getattr(settings, "CACHE_VERSION", 1)
        self._namespace = namespace

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value from cache with automatic key prefixing."""
        full_key = self._make_key(key)
        value = self._cache.get(full_key, default)

        if value is not None:
            logger.debug("Cache HIT: %s", key)
        else:
            logger.debug("Cache MISS: %s", key)

        return value

    def set(self, key: str, value: Any, timeout: int = CACHE_TIMEOUT_MEDIUM) -> bool:
        """Set a value in cache with automatic key prefixing."""
        full_key = self._make_key(key)
        try:
            self._cache.set(full_key, value, timeout)
        except Exception as e:
            logger.warning("Cache SET failed for %s: %s", key, e)
            return False
        logger.debug("Cache SET: %s (timeout=%ss)", key, timeout)
        return True

    def delete(self, key: str) -> bool:
        """Delete a value from cache."""
        full_key = self._make_key(key)
        try:
            self._cache.delete(full_key)
        except Exception as e:
            logger.warning("Cache DELETE failed for %s: %s", key, e)
            return False
        logger.debug("Cache DELETE: %s", key)
        return True

    def delete_many(self, keys: list[str]) -> None:
        """Delete several values in one round trip."""
        if keys:
            self._cache.delete_many([self._make_key(key) for key in keys])

    def get_or_set(
        self,
        key: str,
        factory: Callable[[], T | None],
        timeout: int = CACHE_TIMEOUT_MEDIUM,
    ) -> T | None:
        """Get from cache or compute and cache the value. ``None`` results are not cached."""
        value = self.get(key)
        if value is None:
            value = factory()
            if value is not None:
                self.set(key, value, timeout)
        return cast("T | None", value)

    def clear(self) -> None:
        """Drop every entry of the underlying alias."""
        self._cache.clear()

    def _make_key(self, key: str) -> str:
        """Create a versioned cache key."""
        if self._namespace:
            return f"{self._namespace}:{self._version}:{key}"
        return f"{self._version}:{key}"
