"""
In-memory TTL cache for pricing read models.

Fund progress dashboards and tier listings are read far more often than
purchases happen, so the services cache them per fund under keys built by
:func:`fund_cache_key`.  Every write to a fund's tiers (purchase, tier setup)
drops that fund's keys *after* the unit of work commits, so a reader can
never re-populate the cache with uncommitted state.

Entries expire after ``CACHE_TTL`` seconds.  When ``CACHE_MAX_SIZE`` is
reached the least recently read entry is evicted, which keeps the funds that
are actively selling warm.

The cache lives in a single event loop; no locking is used.
"""

import logging
import time
from collections import OrderedDict
from typing import Any, Optional
from uuid import UUID

from tranche_service.core.config import settings

logger = logging.getLogger(__name__)

PRICING_PREFIX = "pricing:"


def fund_cache_prefix(fund_id: UUID) -> str:
    return f"{PRICING_PREFIX}{fund_id}:"


def fund_cache_key(fund_id: UUID, view: str) -> str:
    """Key for one read model of a fund (``fund``, ``tiers``, ``progress``)."""
    return f"{fund_cache_prefix(fund_id)}{view}"


class CacheEntry:
    __slots__ = ("value", "created_at")

    def __init__(self, value: Any):
        self.value = value
        self.created_at = time.monotonic()

    def is_expired(self, ttl: float) -> bool:
        return (time.monotonic() - self.created_at) > ttl


class TTLCache:
    """
    LRU cache whose entries also expire after ``ttl`` seconds.

    A disabled cache stores nothing and always misses, which lets
    ``CACHE_ENABLED=false`` switch caching off without touching callers.
    """

    def __init__(self, ttl: float = 30.0, max_size: int = 1000, enabled: bool = True):
        self._store: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._ttl = ttl
        self._max_size = max_size
        self._enabled = enabled
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: str) -> Optional[Any]:
        if not self._enabled:
            return None

        entry = self._store.get(key)
        if entry is not None and entry.is_expired(self._ttl):
            del self._store[key]
            entry = None
        if entry is None:
            self._misses += 1
            return None

        self._store.move_to_end(key)
        self._hits += 1
        return entry.value

    def set(self, key: str, value: Any) -> None:
        if not self._enabled:
            return

        self._store[key] = CacheEntry(value)
        self._store.move_to_end(key)
        while len(self._store) > self._max_size:
            evicted, _ = self._store.popitem(last=False)
            self._evictions += 1
            logger.debug("Cache evicted %s", evicted)

    def invalidate(self, *prefixes: str) -> int:
        """Drop every key starting with one of ``prefixes``; return how many went."""
        stale = [k for k in self._store if k.startswith(prefixes)]
        for k in stale:
            del self._store[k]
        return len(stale)

    def invalidate_fund(self, fund_id: UUID) -> int:
        """Drop every cached read model of ``fund_id``."""
        dropped = self.invalidate(fund_cache_prefix(fund_id))
        if dropped:
            logger.debug("Cache dropped %d view(s) of fund %s", dropped, fund_id)
        return dropped

    def clear(self) -> None:
        self._store.clear()

    def get_stats(self) -> dict:
        """Counters for ``/health``."""
        lookups = self._hits + self._misses
        return {
            "enabled": self._enabled,
            "size": len(self._store),
            "max_size": self._max_size,
            "ttl_seconds": self._ttl,
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "hit_rate": f"{self._hits / lookups:.1%}" if lookups else "N/A",
        }


cache = TTLCache(
    ttl=settings.CACHE_TTL,
    max_size=settings.CACHE_MAX_SIZE,
    enabled=settings.CACHE_ENABLED,
)
