from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

from hermes_gateway.gateway.usage_log import JsonlUsageLog

logger = logging.getLogger("uvicorn.error")


class TaskSupervisor:
    """Tracks fire-and-forget tasks so failures are logged and shutdown can cancel them."""

    def __init__(self, *, usage_log: JsonlUsageLog | None = None) -> None:
        self._usage_log = usage_log
        self._tasks: set[asyncio.Task[Any]] = set()
        self._failures = 0

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    @property
    def failure_count(self) -> int:
        return self._failures

    def spawn(
        self, coro: Coroutine[Any, Any, Any], *, name: str
    ) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        self._failures += 1
        logger.error(
            "background_task_failed name=%s error_type=%s error=%s",
            task.get_name(),
            exc.__class__.__name__,
            exc,
            exc_info=exc,
        )
        if self._usage_log is not None:
            self._usage_log.increment("background_task_failed")
            self._usage_log.log(
                {
                    "event": "background_task_failed",
                    "task": task.get_name(),
                    "error_type": exc.__class__.__name__,
                    "error": str(exc),
                }
            )

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
