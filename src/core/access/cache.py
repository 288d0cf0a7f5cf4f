"""
Bounded TTL Cache - size-bounded LRU caching with version-stamped invalidation.

Two instances sit in front of the hierarchy lookups:
1. Scope Cache: user id -> direct scope assignments (5000 entries, 15-min TTL)
2. Organization Cache: org id -> org with parent/root resolved (1000 entries, 15-min TTL)

Cache Invalidation:
- Version-based: every entry records the highest version among the scope
  keys it references; a bump on any of them makes the entry stale on read
- Eager sweep: invalidate_by_scope also deletes referencing entries right away
- Level-wide: invalidate_by_scope_level drops every entry touching that level
- Global: invalidate_all clears entries and versions

Each instance owns its VersionRegistry; the two caches never share versions.
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .models import ORG_SCOPE_TYPE, OrgCacheEntry, ScopeAssignment, make_scope_key

logger = logging.getLogger(__name__)

ScopeRef = Tuple[str, str]

DEFAULT_SCOPE_CACHE_SIZE = 5000
DEFAULT_ORG_CACHE_SIZE = 1000
DEFAULT_TTL_SECONDS = 15 * 60


# =============================================================================
# VERSION REGISTRY
# =============================================================================

class VersionRegistry:
    """
    Invalidation counters keyed by ``"{scope_type}:{scope_id}"``.

    Unknown keys are at version 0. Grows monotonically until cleared.
    """

    def __init__(self):
        self._versions: Dict[str, int] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> int:
        with self._lock:
            return self._versions.get(key, 0)

    def bump(self, key: str) -> int:
        """Increment a key's version and return the new value."""
        with self._lock:
            version = self._versions.get(key, 0) + 1
            self._versions[key] = version
            return version

    def max_version(self, keys: Iterable[str]) -> int:
        with self._lock:
            return max((self._versions.get(key, 0) for key in keys), default=0)

    def clear(self) -> None:
        with self._lock:
            self._versions.clear()

    def __len__(self) -> int:
        return len(self._versions)


# =============================================================================
# CACHE ENTRY
# =============================================================================

@dataclass
class CacheEntry:
    """Cached payload plus the bookkeeping needed for staleness checks."""
    key: str
    payload: Any
    inserted_at: float
    cache_version: int
    scope_refs: FrozenSet[ScopeRef] = field(default_factory=frozenset)

    @property
    def scope_keys(self) -> List[str]:
        return [make_scope_key(scope_type, scope_id) for scope_type, scope_id in self.scope_refs]

    def references(self, scope_type: str, scope_id: Optional[str] = None) -> bool:
        """True if the payload references the scope (or any scope of the level)."""
        for ref_type, ref_id in self.scope_refs:
            if ref_type == scope_type and (scope_id is None or ref_id == scope_id):
                return True
        return False


# =============================================================================
# BOUNDED TTL CACHE
# =============================================================================

class BoundedTTLCache:
    """
    Thread-safe LRU cache with TTL expiration and version-stamped invalidation.

    Recency lives in an OrderedDict: the first key is the least recently
    used, and every hit or set moves its key to the end.

    Args:
        max_size: Maximum number of entries
        ttl_seconds: Entry lifetime
        scope_refs: Callable returning the (scope_type, scope_id) pairs a
            payload references
        clock: Time source in seconds (injectable for tests)
        name: Label used in log messages
    """

    def __init__(
        self,
        max_size: int,
        ttl_seconds: float,
        scope_refs: Callable[[Any], Iterable[ScopeRef]],
        clock: Callable[[], float] = time.time,
        name: str = "cache",
    ):
        if max_size <= 0:
            raise ValueError("max_size must be greater than zero")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.name = name
        self.versions = VersionRegistry()
        self._scope_refs = scope_refs
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        """
        Get an entry, touching it on hit.

        Expired entries and entries whose referenced scopes have been bumped
        past their recorded version are deleted and reported as absent.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                logger.debug(f"{self.name} miss: {key}")
                return None

            if self._clock() - entry.inserted_at > self.ttl_seconds:
                del self._entries[key]
                logger.debug(f"{self.name} expired: {key}")
                return None

            if self.versions.max_version(entry.scope_keys) > entry.cache_version:
                del self._entries[key]
                logger.debug(f"{self.name} stale version: {key}")
                return None

            self._entries.move_to_end(key)
            logger.debug(f"{self.name} hit: {key}")
            return entry

    def get(self, key: str) -> Optional[Any]:
        """Get a cached payload, or None."""
        entry = self.get_entry(key)
        return entry.payload if entry is not None else None

    def set(self, key: str, payload: Any) -> CacheEntry:
        """Insert a payload, evicting least recently used entries at capacity."""
        refs = frozenset(self._scope_refs(payload))
        with self._lock:
            self._entries.pop(key, None)

            while len(self._entries) >= self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"{self.name} evicted: {evicted}")

            entry = CacheEntry(
                key=key,
                payload=payload,
                inserted_at=self._clock(),
                cache_version=self.versions.max_version(
                    make_scope_key(scope_type, scope_id) for scope_type, scope_id in refs
                ),
                scope_refs=refs,
            )
            self._entries[key] = entry
            return entry

    def invalidate_user(self, key: str) -> bool:
        """Remove one entry. Returns True if it was present."""
        with self._lock:
            removed = self._entries.pop(key, None) is not None
        if removed:
            logger.debug(f"{self.name} invalidated entry {key}")
        return removed

    def invalidate_by_scope(self, scope_type: str, scope_id: str) -> int:
        """
        Bump a scope's version and sweep entries referencing it.

        The bump is the correctness guarantee: any entry the sweep misses is
        still rejected on its next read.

        Returns:
            Number of entries removed by the sweep
        """
        with self._lock:
            version = self.versions.bump(make_scope_key(scope_type, scope_id))
            count = self._sweep(lambda entry: entry.references(scope_type, scope_id))
        logger.debug(
            f"{self.name} invalidated {count} entries for {scope_type}:{scope_id} "
            f"(version {version})"
        )
        return count

    def invalidate_by_scope_level(self, scope_type: str) -> int:
        """Remove every entry referencing any node of a level. No version bump."""
        with self._lock:
            count = self._sweep(lambda entry: entry.references(scope_type))
        logger.debug(f"{self.name} invalidated {count} entries for level {scope_type}")
        return count

    def invalidate_all(self) -> int:
        """Clear entries and the version registry."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self.versions.clear()
        logger.info(f"{self.name} cleared ({count} entries)")
        return count

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {"size": len(self._entries), "max_size": self.max_size}

    def keys(self) -> List[str]:
        """Keys from least to most recently used."""
        with self._lock:
            return list(self._entries.keys())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def _sweep(self, predicate: Callable[[CacheEntry], bool]) -> int:
        """Delete matching entries (must hold lock)."""
        doomed = [key for key, entry in self._entries.items() if predicate(entry)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)


# =============================================================================
# CACHE INSTANCES
# =============================================================================

def _assignment_refs(assignments: Iterable[ScopeAssignment]) -> List[ScopeRef]:
    return [(a.scope_type, a.scope_id) for a in assignments]


def _org_refs(entry: OrgCacheEntry) -> List[ScopeRef]:
    org_ids = [entry.org_id, entry.parent_org_id, entry.root_org_id]
    return [(ORG_SCOPE_TYPE, org_id) for org_id in org_ids if org_id]


class ScopeCache(BoundedTTLCache):
    """User id -> list of the user's direct ScopeAssignments."""

    def __init__(
        self,
        max_size: int = DEFAULT_SCOPE_CACHE_SIZE,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(max_size, ttl_seconds, _assignment_refs, clock=clock, name="scope_cache")


class OrgCache(BoundedTTLCache):
    """Org id -> OrgCacheEntry (org, parent and root names resolved)."""

    def __init__(
        self,
        max_size: int = DEFAULT_ORG_CACHE_SIZE,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(max_size, ttl_seconds, _org_refs, clock=clock, name="org_cache")

    def invalidate(self, org_id: str) -> bool:
        return self.invalidate_user(org_id)


# =============================================================================
# CACHE MANAGER
# =============================================================================

class CacheManager:
    """
    Owns the Scope Cache and the Organization Cache.

    Built once at process start and passed to the consumers that need it.
    ``reset()`` clears both caches and their version registries.
    """

    def __init__(self, settings: Optional[Any] = None, clock: Callable[[], float] = time.time):
        if settings is None:
            from config import get_settings
            settings = get_settings()

        scopes = settings.scope_hierarchy
        tenancy = settings.multi_tenancy
        self.scope_cache = ScopeCache(
            max_size=scopes.cache_max_entries,
            ttl_seconds=scopes.cache_ttl_seconds,
            clock=clock,
        )
        self.org_cache = OrgCache(
            max_size=tenancy.org_cache_max_entries,
            ttl_seconds=tenancy.org_cache_ttl_seconds,
            clock=clock,
        )

    def reset(self) -> None:
        """Reset both caches (for testing)."""
        self.scope_cache.invalidate_all()
        self.org_cache.invalidate_all()

    def get_stats(self) -> Dict[str, Dict[str, int]]:
        return {
            "scope_cache": self.scope_cache.get_stats(),
            "org_cache": self.org_cache.get_stats(),
        }
