"""Async concurrency primitives shared by the engine and the handlers."""

from __future__ import annotations

import asyncio
import inspect
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable

T = TypeVar("T")


class BoundedSemaphore:
    """Counting permit pool that knows how many permits are out."""

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self._limit = limit
        self._slots = asyncio.Semaphore(limit)
        self._held = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return self._held

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        # A waiter cancelled before acquiring never holds a permit.
        async with self._slots:
            self._held += 1
            try:
                yield
            finally:
                self._held -= 1

    def snapshot(self) -> dict[str, int]:
        return {"limit": self._limit, "in_use": self._held, "available": self._limit - self._held}


async def run_with_timeout(awaitable: Awaitable[T], timeout_seconds: float) -> T:
    """Await ``awaitable`` for at most ``timeout_seconds``, cancelling it on expiry."""

    if timeout_seconds <= 0:
        if inspect.iscoroutine(awaitable):
            # Avoid the "never awaited" warning for a coroutine we refuse to run.
            awaitable.close()
        raise ValueError("timeout_seconds must be > 0")
    try:
        async with asyncio.timeout(timeout_seconds):
            return await awaitable
    except TimeoutError:
        raise TimeoutError(f"operation timed out after {timeout_seconds:g} seconds") from None


__all__ = ["BoundedSemaphore", "run_with_timeout"]
