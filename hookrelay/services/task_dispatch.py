"""
Background task pool - fire-and-forget work scheduled after the inbound ack.

Forwarding and notifications are submitted here and never awaited by the
caller. Concurrency is bounded by a semaphore; excess tasks wait their turn.
A failing task is logged and dropped, it has no return channel.
"""
import asyncio
import logging
from typing import Coroutine, Optional

logger = logging.getLogger(__name__)


class BackgroundTaskPool:
    def __init__(self, max_concurrency: int = 50):
        self._max_concurrency = max_concurrency
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, coro: Coroutine, name: str = "background") -> asyncio.Task:
        """Schedule coro on the running loop. Must be called from async code."""
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._max_concurrency)
        task = asyncio.create_task(self._run(coro, name), name=name)
        # Keep a strong reference until done, asyncio only holds weak ones
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, coro: Coroutine, name: str) -> None:
        async with self._semaphore:
            try:
                await coro
            except asyncio.CancelledError:
                logger.info("Background task %s cancelled", name)
                raise
            except Exception as e:
                logger.error("Background task %s failed: %s", name, str(e), exc_info=True)

    async def drain(self, timeout: float = 10.0) -> int:
        """
        Wait for in-flight tasks, cancelling whatever is still running after timeout.
        Returns the number of tasks that had to be cancelled.
        """
        tasks = list(self._tasks)
        if not tasks:
            return 0
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return len(pending)


_pool: Optional[BackgroundTaskPool] = None


def get_task_pool() -> BackgroundTaskPool:
    global _pool
    if _pool is None:
        from hookrelay.config import get_settings
        _pool = BackgroundTaskPool(get_settings().background_max_concurrency)
    return _pool


def reset_task_pool() -> None:
    global _pool
    _pool = None


def submit_background(coro: Coroutine, name: str = "background") -> asyncio.Task:
    return get_task_pool().submit(coro, name)
