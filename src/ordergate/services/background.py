"""
Fire-and-forget background tasks.

Best-effort side effects (e.g. capturing a sender's display name) must not
delay or fail the request that triggered them. ``BackgroundTasks`` keeps a
strong reference to each task until it finishes and logs any failure.
"""

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundTasks:
    def __init__(self) -> None:
        self._active: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], description: str) -> asyncio.Task:
        """
        Schedule ``coro`` on the running loop without awaiting it.

        Args:
            coro: Coroutine to run.
            description: Short label used in failure logs.

        Returns:
            asyncio.Task: The scheduled task.
        """
        task = asyncio.get_running_loop().create_task(coro)
        self._active.add(task)
        task.add_done_callback(lambda t: self._on_done(t, description))
        return task

    def _on_done(self, task: asyncio.Task, description: str) -> None:
        self._active.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background task failed: {description}", exc_info=error)

    async def drain(self) -> None:
        """Wait for all outstanding tasks; failures are already logged."""
        if self._active:
            await asyncio.gather(*self._active, return_exceptions=True)

    def __len__(self) -> int:
        return len(self._active)
