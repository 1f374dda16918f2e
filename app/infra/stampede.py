# app/infra/stampede.py
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from app.infra.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class StampedeGuard:
    """
    At most one in-flight orchestration per cache key.

    The first caller starts ``work()`` as a task; concurrent callers for the
    same key await that task and receive the identical result (or the
    identical exception). The entry is dropped from the in-flight map in the
    task's done-callback, which runs before any awaiting caller resumes.

    Waiters await through asyncio.shield(): cancelling one caller does not
    cancel the shared work for the others.
    """

    def __init__(self):
        self._in_flight: dict[str, asyncio.Task] = {}

    @property
    def active_count(self) -> int:
        return len(self._in_flight)

    def is_in_flight(self, cache_key: str) -> bool:
        return cache_key in self._in_flight

    async def run_exclusive(self, cache_key: str, work: Callable[[], Awaitable[T]]) -> T:
        existing = self._in_flight.get(cache_key)
        if existing is not None:
            logger.info(f"Request stampede prevented for {cache_key}", extra={"cache_key": cache_key})
            return await asyncio.shield(existing)

        task = asyncio.ensure_future(work())
        self._in_flight[cache_key] = task
        task.add_done_callback(lambda t: self._release(cache_key, t))
        return await asyncio.shield(task)

    def _release(self, cache_key: str, task: "asyncio.Future[Any]") -> None:
        if self._in_flight.get(cache_key) is task:
            del self._in_flight[cache_key]
