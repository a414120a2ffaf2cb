from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Dict, Optional

from onechart.errors import PipelineAlreadyRunning

logger = logging.getLogger("onechart.tasks")


class TaskRegistry:
    """
    Background work keyed by session id. At most one task per key is in
    flight; finished tasks drop out of the registry on their own.
    """

    def __init__(self) -> None:
        self._tasks: Dict[str, asyncio.Task] = {}

    def launch(self, key: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        existing = self._tasks.get(key)
        if existing is not None and not existing.done():
            coro.close()
            raise PipelineAlreadyRunning(key)
        task = asyncio.create_task(coro, name=f"onechart:{key}")
        self._tasks[key] = task
        task.add_done_callback(lambda t, k=key: self._discard(k, t))
        return task

    def _discard(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        if task.cancelled():
            logger.info("Task cancelled (key=%s)", key)
            return
        exc = task.exception()
        if exc is not None:
            logger.debug("Task ended with %s (key=%s)", type(exc).__name__, key)

    def is_running(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def get(self, key: str) -> Optional[asyncio.Task]:
        return self._tasks.get(key)

    async def wait(self, key: str) -> Any:
        """
        Block until the task for `key` settles and return its result.
        Returns None when nothing is registered or the task was cancelled.
        """
        task = self._tasks.get(key)
        if task is None:
            return None
        await asyncio.wait({task})
        if task.cancelled():
            return None
        return task.result()

    def cancel(self, key: str) -> bool:
        task = self._tasks.get(key)
        if task is None or task.done():
            return False
        return task.cancel()

    async def drain(self, cancel: bool = False) -> None:
        tasks = list(self._tasks.values())
        if cancel:
            for task in tasks:
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def __len__(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())
