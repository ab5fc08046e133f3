"""Pool of multiplexed (HTTP/2) client sessions keyed by origin."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional

import httpx

from common.logging_utils import extra_context, is_debug_enabled
from constants import Constants

logger = logging.getLogger(__name__)


def default_client_factory(origin: str) -> httpx.AsyncClient:
    """One HTTP/2 client per origin; redirects are handled by the caller."""
    return httpx.AsyncClient(
        http2=True,
        follow_redirects=False,
        headers={"User-Agent": Constants.USER_AGENT},
        timeout=Constants.REQUEST_TIMEOUT,
    )


@dataclass
class _Session:
    client: httpx.AsyncClient
    last_used: float
    in_flight: int = 0
    retired: bool = False


class MultiplexedSessionPool:
    """Bounded, LRU-evicting pool of long-lived multiplexed sessions.

    Sessions are dropped when evicted, when idle for longer than
    ``idle_timeout``, or when discarded after a connection failure. A dropped
    session still carrying requests is closed once the last one finishes.
    """

    def __init__(
        self,
        max_sessions: int = Constants.HTTP2_MAX_SESSIONS,
        idle_timeout: float = Constants.HTTP2_IDLE_TIMEOUT_SEC,
        client_factory: Callable[[str], httpx.AsyncClient] = default_client_factory,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._max_sessions = max_sessions
        self._idle_timeout = idle_timeout
        self._factory = client_factory
        self._clock = clock
        self._sessions: "OrderedDict[str, _Session]" = OrderedDict()

    def origins(self) -> List[str]:
        """Pooled origins from least to most recently used."""
        return list(self._sessions.keys())

    def in_flight(self, origin: str) -> int:
        """Requests currently running on the pooled session for ``origin``."""
        session = self._sessions.get(origin)
        return session.in_flight if session is not None else 0

    def __len__(self) -> int:
        return len(self._sessions)

    async def _checkout(self, origin: str, hold: bool) -> _Session:
        await self.reap_idle()
        now = self._clock()
        session = self._sessions.get(origin)
        evicted: Optional[_Session] = None
        evicted_origin = None
        if session is not None and not session.client.is_closed:
            session.last_used = now
            self._sessions.move_to_end(origin)
        else:
            if session is not None:
                del self._sessions[origin]
            if len(self._sessions) >= self._max_sessions:
                evicted_origin, evicted = self._sessions.popitem(last=False)
            session = _Session(client=self._factory(origin), last_used=now)
            self._sessions[origin] = session
        if hold:
            session.in_flight += 1

        if evicted is not None:
            if is_debug_enabled(logger):
                logger.debug(
                    "Evicting multiplexed session",
                    extra=extra_context(
                        event="session_evict",
                        component="session_pool",
                        target=evicted_origin,
                        count=evicted.in_flight,
                    ),
                )
            await self._retire(evicted)
        return session

    async def _retire(self, session: _Session) -> None:
        session.retired = True
        if session.in_flight == 0:
            await session.client.aclose()

    async def acquire(self, origin: str) -> httpx.AsyncClient:
        """Return the live session for ``origin``, creating one if needed."""
        session = await self._checkout(origin, hold=False)
        return session.client

    @asynccontextmanager
    async def lease(self, origin: str) -> AsyncIterator[httpx.AsyncClient]:
        """Hold the origin's session for one request.

        Eviction or discard while the lease is held defers closing the
        client until every lease on it is released.
        """
        session = await self._checkout(origin, hold=True)
        try:
            yield session.client
        finally:
            session.in_flight -= 1
            session.last_used = self._clock()
            if session.retired and session.in_flight == 0:
                await session.client.aclose()

    async def discard(self, origin: str, client: Optional[httpx.AsyncClient] = None) -> None:
        """Drop the session for ``origin`` after a connection failure.

        With ``client`` given, a newer session that replaced it is left alone.
        """
        session = self._sessions.get(origin)
        if session is None or (client is not None and session.client is not client):
            return
        del self._sessions[origin]
        await self._retire(session)

    async def reap_idle(self) -> int:
        """Close idle sessions past the timeout; returns how many were dropped."""
        now = self._clock()
        stale = [
            origin
            for origin, session in self._sessions.items()
            if session.in_flight == 0
            and (now - session.last_used >= self._idle_timeout or session.client.is_closed)
        ]
        for origin in stale:
            await self.discard(origin)
        return len(stale)

    async def aclose(self) -> None:
        """Close every pooled session."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.client.aclose()
