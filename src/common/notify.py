"""User-facing notifications with per-session de-duplication."""

from __future__ import annotations

import logging
import threading
from typing import Dict, Optional, Set

from common.logging_utils import extra_context

logger = logging.getLogger(__name__)


class Notifier:
    """Surfaces warnings to the user at most once per (category, key).

    The default implementation logs at WARNING. Hosts with a UI subclass it
    and override ``emit``.
    """

    def __init__(self) -> None:
        self._seen: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    def warn_once(self, category: str, key: str, message: str) -> bool:
        """Emit ``message`` unless this (category, key) was already shown.

        Returns:
            True when the message was emitted.
        """
        norm = key.lower()
        with self._lock:
            seen = self._seen.setdefault(category, set())
            if norm in seen:
                return False
            seen.add(norm)
        self.emit(category, message)
        return True

    def was_shown(self, category: str, key: str) -> bool:
        """Return True when (category, key) has already been shown."""
        with self._lock:
            return key.lower() in self._seen.get(category, set())

    def reset(self, category: Optional[str] = None) -> None:
        """Forget shown keys for one category, or for all of them."""
        with self._lock:
            if category is None:
                self._seen.clear()
            else:
                self._seen.pop(category, None)

    def emit(self, category: str, message: str) -> None:
        """Deliver a message; override in UI hosts."""
        logger.warning("%s", message, extra=extra_context(event="notify", component="notifier", target=category))
