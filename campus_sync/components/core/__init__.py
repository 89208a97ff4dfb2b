"""
Core components: constants and shared protocols.
"""

from campus_sync.components.core.constants import CacheNamespace, HasStats, SyncConstants

__all__ = [
    "CacheNamespace",
    "HasStats",
    "SyncConstants",
]
