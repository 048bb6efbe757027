"""In-process concurrency limiter for LLM-bound work."""

import asyncio
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import TypeVar

from curriculum_engine.core.config import get_settings

T = TypeVar("T")


class RequestQueue:
    """Runs at most ``max_concurrent`` tasks at once.

    Excess callers wait in FIFO order on a future until a running task
    releases its slot. The slot is always released, also when the task
    raises or is cancelled.
    """

    def __init__(self, max_concurrent: int = 3):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._active = 0
        self._waiting: deque[asyncio.Future] = deque()

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def pending_count(self) -> int:
        return len(self._waiting)

    async def _acquire(self) -> None:
        if self._active < self.max_concurrent and not self._waiting:
            self._active += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiting.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            # A slot handed over just before cancellation must be passed on
            if waiter.done() and not waiter.cancelled():
                self._release()
            elif waiter in self._waiting:
                self._waiting.remove(waiter)
            raise

    def _release(self) -> None:
        while self._waiting:
            waiter = self._waiting.popleft()
            if not waiter.done():
                # Slot transfers directly to the next waiter
                waiter.set_result(None)
                return
        self._active -= 1

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold one slot for the duration of the block."""
        await self._acquire()
        try:
            yield
        finally:
            self._release()

    async def run(self, task: Callable[[], Awaitable[T]]) -> T:
        """Run ``task()`` once a slot is free and return its result."""
        async with self.slot():
            return await task()


@lru_cache(maxsize=1)
def get_llm_queue() -> RequestQueue:
    """Process-wide queue shared by every LLM call."""
    return RequestQueue(get_settings().LLM_CONCURRENCY)
