"""
Caching components: query cache and identity snapshot.
"""

from campus_sync.components.cache.store import CacheEntry, CacheKey, CacheStore, QueryCache
from campus_sync.components.cache.identity import (
    AuthEvent,
    AuthEventKind,
    IdentitySnapshot,
    IdentitySnapshotCache,
    IdentityStatus,
)

__all__ = [
    "CacheEntry",
    "CacheKey",
    "CacheStore",
    "QueryCache",
    "AuthEvent",
    "AuthEventKind",
    "IdentitySnapshot",
    "IdentitySnapshotCache",
    "IdentityStatus",
]
