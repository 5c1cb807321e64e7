"""Bounded fan-out primitives for async callers.

``ConcurrencyLimiter`` caps the number of simultaneous operations (LLM calls
during reranking, extraction runs in the queue).  Waiters are served strictly
in arrival order and a released permit is handed straight to the oldest
waiter, so a waiter can never miss its wake-up.

There is no timeout: a caller that acquires and never releases starves every
later waiter.  Prefer ``run()`` or ``async with`` which release on every exit
path.
"""

from __future__ import annotations

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Dict, Hashable, TypeVar

T = TypeVar("T")


class ConcurrencyLimiter:
    """FIFO counting semaphore for coroutines."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._available = capacity
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def available(self) -> int:
        return self._available

    @property
    def waiting(self) -> int:
        return sum(1 for fut in self._waiters if not fut.done())

    async def acquire(self) -> None:
        """Take a permit, suspending in FIFO order when none is free."""
        if self._available > 0 and not self._waiters:
            self._available -= 1
            return

        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            # The permit may already have been handed to us; pass it on.
            if fut.done() and not fut.cancelled():
                self.release()
            else:
                try:
                    self._waiters.remove(fut)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        """Return a permit, handing it to the head of the queue if any."""
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.set_result(None)
                return
        if self._available >= self._capacity:
            raise RuntimeError("release() called more times than acquire()")
        self._available += 1

    async def run(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Acquire, await ``fn(*args, **kwargs)``, release even on error."""
        await self.acquire()
        try:
            return await fn(*args, **kwargs)
        finally:
            self.release()

    async def __aenter__(self) -> "ConcurrencyLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.release()


class KeyedLock:
    """Per-key ``asyncio.Lock`` registry.

    Used as an in-process advisory lock around find-or-create writes, keyed by
    e.g. ``(user_id, type, normalized_name)``.  Locks are discarded once no
    coroutine holds or waits on them.
    """

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
