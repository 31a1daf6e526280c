"""Per-key coordination for concurrent tasks."""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Hashable, TypeVar

T = TypeVar("T")


class InFlightRegistry:
    """Run at most one operation per key at a time.

    A caller asking for a key whose operation is still running awaits the
    running task instead of starting a second one. The key is released when
    the task finishes, successfully or not.
    """

    def __init__(self) -> None:
        self._tasks: Dict[Hashable, "asyncio.Task[Any]"] = {}

    def is_in_flight(self, key: Hashable) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def __len__(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    async def run(self, key: Hashable, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` for ``key`` or join the one already running."""
        task = self._tasks.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(operation())
            self._tasks[key] = task
            task.add_done_callback(lambda finished, k=key: self._release(k, finished))
        # Shielded so a cancelled waiter does not cancel the shared task
        return await asyncio.shield(task)

    def _release(self, key: Hashable, finished: "asyncio.Task[Any]") -> None:
        if self._tasks.get(key) is finished:
            del self._tasks[key]
        # Mark the exception retrieved when every waiter has gone away
        if not finished.cancelled():
            finished.exception()


class KeyedLocks:
    """One lock per key; holders of the same key run one after another.

    Unlike ``InFlightRegistry`` every caller runs its own block, so work
    started after another holder finishes sees that holder's writes.
    """

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._holders: Dict[Hashable, int] = {}

    def is_locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                del self._locks[key]
