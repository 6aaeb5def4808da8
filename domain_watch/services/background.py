from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from functools import lru_cache
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundTaskPool:
    """Fire-and-forget tasks that are still drained on shutdown.

    Callers never await what they spawn. The pool keeps a strong reference to
    every task until it finishes and logs anything that escapes it.
    """

    def __init__(self, name: str = "background") -> None:
        self.name = name
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task[Any] | None:
        # While draining, only tasks the pool already supervises may add work.
        if self._closed and not self._owns_current_task():
            coro.close()
            logger.warning("pool=%s is draining; dropped task name=%s", self.name, name)
            return None
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    async def drain(self, timeout: float | None = None) -> int:
        """Wait for in-flight tasks, including ones they spawn meanwhile.

        Whatever is still running once ``timeout`` has elapsed is cancelled;
        returns the number of tasks that had to be cancelled.
        """
        self._closed = True
        if not self._tasks:
            return 0

        logger.info("draining pool=%s pending=%s timeout=%s", self.name, len(self._tasks), timeout)
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            pending = {task for task in self._tasks if not task.done()}
            if not pending:
                return 0
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                break
            await asyncio.wait(pending, timeout=remaining)

        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        logger.warning("pool=%s cancelled %s tasks after grace period", self.name, len(pending))
        return len(pending)

    def reopen(self) -> None:
        self._closed = False

    def _owns_current_task(self) -> bool:
        try:
            current = asyncio.current_task()
        except RuntimeError:
            return False
        return current is not None and current in self._tasks

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "background task failed pool=%s name=%s",
                self.name,
                task.get_name(),
                exc_info=(type(exc), exc, exc.__traceback__),
            )


@lru_cache
def get_task_pool() -> BackgroundTaskPool:
    return BackgroundTaskPool(name="webhooks")
