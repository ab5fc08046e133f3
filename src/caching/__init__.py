"""Multi-tier caching: bounded LRU, persisted workspace store, cooldowns."""

from .lru import LRUCache
from .negative import CooldownCache
from .tiered import TieredCache
from .workspace import CacheEntry, WorkspaceCache

__all__ = [
    "CacheEntry",
    "CooldownCache",
    "LRUCache",
    "TieredCache",
    "WorkspaceCache",
]
