"""Fan-out helpers: first-acceptable-result racing, bounded gather, staleness guards."""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")

logger = logging.getLogger(__name__)

# Keeps straggler tasks referenced until they finish
_BACKGROUND: set = set()


def _non_empty(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (list, tuple, dict, set, str)):
        return len(value) > 0
    return True


def _detach(task: "asyncio.Future[Any]") -> None:
    _BACKGROUND.add(task)

    def _done(t: "asyncio.Future[Any]") -> None:
        _BACKGROUND.discard(t)
        if not t.cancelled() and t.exception() is not None:
            logger.debug("Background query failed: %s", t.exception())

    task.add_done_callback(_done)


async def race_first(
    factories: Sequence[Callable[[], Awaitable[T]]],
    accept: Callable[[T], bool] = _non_empty,
    default: Optional[T] = None,
) -> Optional[T]:
    """Start every query and return the first accepted result.

    Stragglers are not awaited; they keep running in the background. When no
    result is accepted, the first completed result is returned, or ``default``
    when every query raised.

    Args:
        factories: Zero-argument callables producing the coroutines to race
        accept: Predicate a result must satisfy to win
        default: Returned when nothing completed successfully

    Returns:
        The winning result, the fallback, or ``default``
    """
    if not factories:
        return default
    pending = {asyncio.ensure_future(factory()) for factory in factories}
    first_completed: List[T] = []
    try:
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task.cancelled() or task.exception() is not None:
                    continue
                result = task.result()
                if accept(result):
                    return result
                if not first_completed:
                    first_completed.append(result)
    finally:
        for task in pending:
            _detach(task)
    return first_completed[0] if first_completed else default


async def bounded_gather(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    limit: int,
) -> List[Optional[R]]:
    """Map ``worker`` over ``items`` with at most ``limit`` in flight.

    Results keep input order; an item whose worker raised yields None.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def run(item: T) -> Optional[R]:
        async with semaphore:
            try:
                return await worker(item)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                logger.debug("Batch item failed: %s", exc)
                return None

    return list(await asyncio.gather(*(run(item) for item in items)))


class GenerationCounter:
    """Monotonic request generations; only the newest may publish results."""

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    @property
    def current(self) -> int:
        with self._lock:
            return self._value

    def next(self) -> int:
        """Start a new generation, superseding every earlier one."""
        with self._lock:
            self._value += 1
            return self._value

    def is_current(self, token: int) -> bool:
        with self._lock:
            return token == self._value


class QuerySession:
    """Holds the latest result of a repeatable query (e.g. search-as-you-type).

    Each ``run`` captures a generation; its result is applied only if no
    newer run started while it was in flight.
    """

    def __init__(self) -> None:
        self.generation = GenerationCounter()
        self.result: Any = None

    def apply_if_current(self, token: int, result: Any) -> bool:
        """Store ``result`` if ``token`` is still the newest generation."""
        if not self.generation.is_current(token):
            return False
        self.result = result
        return True

    async def run(self, query: Callable[[], Awaitable[Any]]) -> bool:
        """Run ``query`` and publish its result unless superseded.

        Returns:
            True when the result was applied
        """
        token = self.generation.next()
        result = await query()
        return self.apply_if_current(token, result)
