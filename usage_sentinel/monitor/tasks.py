"""
Detached background tasks.

Work that must not block the evaluation path, such as notification
delivery, is spawned here. Failures go to a dedicated logger instead of
being dropped with the task.
"""

import asyncio
import logging
from typing import Awaitable, Optional, Set

error_logger = logging.getLogger("usage_sentinel.tasks")


class BackgroundTasks:
    """Keeps strong references to detached tasks until they finish."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable, name: Optional[str] = None) -> asyncio.Task:
        """Schedule ``coro`` without awaiting it.

        Must be called from inside a running event loop.
        """
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            error_logger.error(
                "Detached task %s failed: %s", task.get_name(), exc,
                exc_info=(type(exc), exc, exc.__traceback__)
            )

    async def drain(self) -> None:
        """Wait for every outstanding task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
