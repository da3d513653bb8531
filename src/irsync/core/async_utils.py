"""Async utilities for offloading blocking convert/generate/I-O calls."""

import asyncio
import logging
import os
from typing import Any, Callable, Coroutine, Sequence, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a thread without blocking the event loop.

    Unbounded; use ``WorkerPool.run`` for work that must respect the
    configured pool size.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)
    """
    return await asyncio.to_thread(func, *args, **kwargs)


class WorkerPool:
    """Bounded pool for blocking work.

    Each call runs in a thread via ``asyncio.to_thread`` while holding one
    slot of a semaphore, so at most ``size`` calls run at once. Unrelated
    logical units therefore progress in parallel without oversubscribing
    the machine.

    Args:
        size: Maximum concurrent calls. Defaults to the CPU count.
    """

    def __init__(self, size: int | None = None) -> None:
        self.size = size or os.cpu_count() or 1
        self._semaphore = asyncio.Semaphore(self.size)
        self._active = 0
        logger.debug("Worker pool initialized: size=%d", self.size)

    @property
    def active(self) -> int:
        """Number of calls currently holding a slot."""
        return self._active

    async def run(
        self, func: Callable[..., T], *args: Any, **kwargs: Any
    ) -> T:
        """Run *func* in a thread, bounded by the pool size.

        Args:
            func: Synchronous function to call
            *args: Positional arguments for func
            **kwargs: Keyword arguments for func

        Returns:
            Result of func(*args, **kwargs)
        """
        async with self._semaphore:
            self._active += 1
            try:
                return await asyncio.to_thread(func, *args, **kwargs)
            finally:
                self._active -= 1


async def gather_limited(
    pool: WorkerPool,
    calls: Sequence[tuple[Callable[..., T], tuple]],
) -> list[T]:
    """Run several blocking calls through *pool* concurrently.

    Returns results in order. Exceptions propagate from the first failure.

    Args:
        pool: The pool bounding concurrency.
        calls: ``(func, args)`` pairs.

    Returns:
        List of results in the same order as *calls*.
    """
    coros: list[Coroutine[Any, Any, T]] = [
        pool.run(func, *args) for func, args in calls
    ]
    return list(await asyncio.gather(*coros))
