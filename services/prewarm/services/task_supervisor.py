"""Supervised background tasks.

Webhook processing continues after the HTTP response has been sent. Every
such task is spawned here so that a failure is logged exactly once, with
the task's name and context, and so shutdown can wait for in-flight work.
"""

import asyncio
from collections.abc import Coroutine
from typing import Any

from prewarm.logging_config import get_logger

logger = get_logger(__name__)


class TaskSupervisor:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()
        self._context: dict[asyncio.Task, dict[str, Any]] = {}

    def spawn(self, name: str, coro: Coroutine[Any, Any, Any], **context: Any) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        self._context[task] = context
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        context = self._context.pop(task, {})
        if task.cancelled():
            logger.info("Background task cancelled", task=task.get_name(), **context)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task failed", task=task.get_name(), exc_info=exc, **context)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for in-flight tasks, cancelling whatever is left after timeout."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        logger.info("Draining background tasks", count=len(tasks))
        _done, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
