"""Negative-result cache: remembers recent failures for a cooldown window."""

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional


class CooldownCache:
    """Suppress repeat attempts against a failing key for ``ttl`` seconds."""

    def __init__(self, ttl: float = 60, clock: Callable[[], float] = time.time):
        self._ttl = ttl
        self._clock = clock
        self._failed_at: Dict[str, float] = {}
        self._lock = threading.Lock()

    def mark_failed(self, key: str) -> None:
        """Record a failure now."""
        with self._lock:
            self._failed_at[key.lower()] = self._clock()

    def in_cooldown(self, key: str) -> bool:
        """True while the last failure is younger than the TTL."""
        norm = key.lower()
        with self._lock:
            failed_at = self._failed_at.get(norm)
            if failed_at is None:
                return False
            if self._clock() - failed_at < self._ttl:
                return True
            del self._failed_at[norm]
            return False

    def clear(self, key: Optional[str] = None) -> None:
        """Forget one key, or every recorded failure."""
        with self._lock:
            if key is None:
                self._failed_at.clear()
            else:
                self._failed_at.pop(key.lower(), None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._failed_at)
