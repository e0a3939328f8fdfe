"""Fire-and-forget background work that outlives the request.

State writes are scheduled here so the response can be returned before they
finish. The queue keeps a strong reference to every task until it completes,
logs failures instead of raising them, and is drained by the app lifespan on
shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundTaskQueue:
    """Tracks detached asyncio tasks until they finish."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def schedule(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        """Start ``coro`` without awaiting it."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.debug("Scheduled background task %s (%d pending)", name, len(self._tasks))
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed",
                task.get_name(),
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for all scheduled tasks, cancelling stragglers after ``timeout``."""
        if not self._tasks:
            return

        logger.info("Draining %d background tasks...", len(self._tasks))
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Cancelled %d background tasks after %ss", len(pending), timeout)
            await asyncio.gather(*pending, return_exceptions=True)


task_queue = BackgroundTaskQueue()


def get_task_queue() -> BackgroundTaskQueue:
    """FastAPI dependency returning the process-wide task queue."""
    return task_queue
