"""Read-through cache over an LRU tier and a persisted tier."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional

from common.logging_utils import extra_context, is_debug_enabled

from .lru import LRUCache
from .workspace import WorkspaceCache

logger = logging.getLogger(__name__)


def _non_empty(value: Any) -> bool:
    """Default acceptance: cache only values that carry data."""
    if value is None:
        return False
    if isinstance(value, (list, tuple, dict, set, str)):
        return len(value) > 0
    return True


class TieredCache:
    """LRU first, then the persisted store, then the network.

    A persisted hit is promoted back into the LRU. Fetched values are written
    to both tiers only when ``accept`` says so, so failures and empty results
    are never cached as data.
    """

    def __init__(
        self,
        lru: LRUCache,
        store: Optional[WorkspaceCache] = None,
        encode: Callable[[Any], Any] = lambda v: v,
        decode: Callable[[Any], Any] = lambda v: v,
    ):
        self._lru = lru
        self._store = store
        self._encode = encode
        self._decode = decode

    @property
    def lru(self) -> LRUCache:
        """The in-process tier."""
        return self._lru

    def get(self, key: str) -> Optional[Any]:
        """Look up both tiers, promoting persisted hits."""
        value = self._lru.get(key)
        if value is not None:
            return value
        if self._store is None:
            return None
        raw = self._store.get(key)
        if raw is None:
            return None
        try:
            value = self._decode(raw)
        except (TypeError, ValueError, KeyError) as exc:
            logger.debug("Dropping undecodable cache entry %s: %s", key, exc)
            self._store.delete(key)
            return None
        self._lru.set(key, value)
        return value

    def set(self, key: str, value: Any, ttl: float = 0) -> None:
        """Write through to both tiers."""
        self._lru.set(key, value)
        if self._store is not None:
            self._store.set(key, self._encode(value), ttl)

    def delete(self, key: str) -> None:
        """Remove a key from both tiers."""
        self._lru.delete(key)
        if self._store is not None:
            self._store.delete(key)

    def clear_memory(self) -> None:
        """Drop the in-process tier only."""
        self._lru.clear()

    async def get_or_fetch(
        self,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
        ttl: float = 0,
        accept: Callable[[Any], bool] = _non_empty,
    ) -> Any:
        """Return a cached value or fetch, caching only accepted results."""
        cached = self.get(key)
        if cached is not None:
            if is_debug_enabled(logger):
                logger.debug(
                    "Cache hit",
                    extra=extra_context(event="cache_hit", component="tiered_cache", target=key),
                )
            return cached
        value = await fetch()
        if accept(value):
            self.set(key, value, ttl)
        return value
