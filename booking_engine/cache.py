"""
In-memory TTL cache for read-mostly lookups.

Used for the active platform fee rate and for resource catalog entries, both of
which are read on every quote but change rarely. Entries are invalidated
explicitly when the underlying record changes (e.g. an admin rate change).

For deployments with multiple instances the TTL bounds how long another
instance may serve a stale value.
"""

import threading
from datetime import datetime, timedelta
from typing import Any, Hashable, Optional

from booking_engine.utils.datetime import utc_now


class TTLCache:
    """
    Thread-safe in-memory cache with time-to-live (TTL) expiration.

    Attributes:
        ttl: Time-to-live for cached entries
        _cache: Internal storage mapping key to (value, expires_at) tuples

    Example:
        >>> cache = TTLCache(ttl_seconds=60)
        >>> cache.set("platform_fee_rate", Decimal("0.15"))
        >>> rate = cache.get("platform_fee_rate")
        >>> cache.invalidate("platform_fee_rate")
    """

    def __init__(self, ttl_seconds: int = 60):
        """
        Initialize cache with specified TTL.

        Args:
            ttl_seconds: Time-to-live in seconds for cached entries
        """
        self.ttl = timedelta(seconds=ttl_seconds)
        self._cache: dict[Hashable, tuple[Any, datetime]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[Any]:
        """
        Get cached value if not expired.

        Args:
            key: Cache key

        Returns:
            Cached value if found and not expired, None otherwise
        """
        with self._lock:
            if key in self._cache:
                value, expires_at = self._cache[key]
                if utc_now() < expires_at:
                    return value
                # Expired - remove from cache
                del self._cache[key]
        return None

    def set(self, key: Hashable, value: Any) -> None:
        """
        Cache value with TTL.

        Args:
            key: Cache key
            value: Value to cache (None is not cacheable)
        """
        with self._lock:
            self._cache[key] = (value, utc_now() + self.ttl)

    def invalidate(self, key: Hashable) -> None:
        """Remove a single entry."""
        with self._lock:
            self._cache.pop(key, None)

    def clear(self) -> None:
        """
        Clear all cached entries.

        Useful for testing or emergency cache invalidation.
        """
        with self._lock:
            self._cache.clear()

    def size(self) -> int:
        """Number of entries currently cached (expired ones included until read)."""
        with self._lock:
            return len(self._cache)
