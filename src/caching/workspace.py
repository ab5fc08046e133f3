"""Persisted key/value store scoped to a workspace.

Entries survive process restarts. Each entry carries an absolute
``expiresAt`` timestamp (seconds since the epoch, 0 == never expires). The
store is bounded: when it grows past ``max_entries`` expired entries go
first, then entries closest to expiry, and never-expiring entries last.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from common.logging_utils import extra_context, is_debug_enabled
from constants import Constants

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """A single persisted value with its absolute expiry."""

    value: Any
    expires_at: float

    def is_expired(self, now: float) -> bool:
        """Check if this entry has expired (0 never expires)."""
        return self.expires_at != 0 and now > self.expires_at

    def to_json(self) -> Dict[str, Any]:
        """Serialize using the on-disk field names."""
        return {"value": self.value, "expiresAt": self.expires_at}


class WorkspaceCache:
    """JSON-file backed cache with per-entry TTL and a global ceiling."""

    def __init__(
        self,
        path: Optional[str] = None,
        max_entries: int = Constants.WORKSPACE_CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
        autosave: bool = True,
    ):
        """Initialize the store and load any existing file.

        Args:
            path: JSON file to persist into. None keeps the store in memory.
            max_entries: Global entry ceiling.
            clock: Time source, injectable for tests.
            autosave: Rewrite the file on every change. When False, changes
                are written by ``flush()``.
        """
        self._path = path
        self._max_entries = max_entries
        self._clock = clock
        self._autosave = autosave
        self._dirty = False
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._load()

    @property
    def path(self) -> Optional[str]:
        """Backing file, if any."""
        return self._path

    def get(self, key: str) -> Optional[Any]:
        """Return a live value or None; expired entries are deleted on sight."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._changed()
                return None
            return entry.value

    def set(self, key: str, value: Any, ttl: float = 0) -> None:
        """Store a value. ``ttl`` in seconds; 0 means never expires."""
        with self._lock:
            expires_at = self._clock() + ttl if ttl > 0 else 0
            self._entries[key] = CacheEntry(value=value, expires_at=expires_at)
            self._evict_if_needed()
            self._changed()

    def has(self, key: str) -> bool:
        """True when a live entry exists."""
        return self.get(key) is not None

    def delete(self, key: str) -> None:
        """Remove a key if present."""
        with self._lock:
            if self._entries.pop(key, None) is not None:
                self._changed()

    def clear(self) -> None:
        """Remove every entry."""
        with self._lock:
            self._entries.clear()
            self._changed()

    def keys(self) -> List[str]:
        """Stored keys, including not-yet-purged expired ones."""
        with self._lock:
            return list(self._entries.keys())

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            now = self._clock()
            expired_count = sum(1 for e in self._entries.values() if e.is_expired(now))
            return {
                "total_entries": len(self._entries),
                "expired_entries": expired_count,
                "active_entries": len(self._entries) - expired_count,
                "max_entries": self._max_entries,
                "path": self._path,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _purge_expired(self) -> int:
        """Remove expired entries; returns how many were removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def _evict_if_needed(self) -> None:
        """Enforce the ceiling: expired first, then soonest-expiring."""
        if len(self._entries) <= self._max_entries:
            return
        self._purge_expired()
        overflow = len(self._entries) - self._max_entries
        if overflow <= 0:
            return
        # Never-expiring entries sort last
        ordered = sorted(
            self._entries.items(),
            key=lambda item: (item[1].expires_at == 0, item[1].expires_at),
        )
        for key, _ in ordered[:overflow]:
            del self._entries[key]
        if is_debug_enabled(logger):
            logger.debug(
                "Evicted cache entries",
                extra=extra_context(
                    event="cache_evict", component="workspace_cache", count=overflow
                ),
            )

    def _load(self) -> None:
        """Read the backing file, dropping malformed and expired entries."""
        if not self._path or not os.path.isfile(self._path):
            return
        try:
            with open(self._path, "r", encoding="utf-8") as fh:
                raw = json.load(fh)
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable cache file %s: %s", self._path, exc)
            return
        if not isinstance(raw, dict):
            return
        for key, item in raw.items():
            if not isinstance(item, dict) or "value" not in item:
                continue
            try:
                expires_at = float(item.get("expiresAt", 0) or 0)
            except (TypeError, ValueError):
                continue
            self._entries[key] = CacheEntry(value=item["value"], expires_at=expires_at)
        if self._purge_expired():
            self._changed()

    def _changed(self) -> None:
        self._dirty = True
        if self._autosave:
            self._save()

    def flush(self) -> bool:
        """Write pending changes; returns True when the file was rewritten."""
        with self._lock:
            if not self._dirty:
                return False
            return self._save()

    def _save(self) -> bool:
        """Atomically rewrite the backing file."""
        if not self._path:
            self._dirty = False
            return False
        directory = os.path.dirname(os.path.abspath(self._path))
        payload = {k: e.to_json() for k, e in self._entries.items()}
        tmp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".nuiget-cache-", dir=directory)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh)
            os.replace(tmp_path, self._path)
            tmp_path = None
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Failed to persist cache file %s: %s", self._path, exc)
            return False
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
        self._dirty = False
        return True
