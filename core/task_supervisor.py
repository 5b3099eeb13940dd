"""
Supervised background tasks.

The event loop only keeps weak references to tasks, so fire-and-forget
dispatches are held here until they finish.  Every terminal state is
logged, and shutdown waits (bounded) for in-flight work.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Dict, Optional, Set

logger = logging.getLogger(__name__)


class BackgroundTaskSupervisor:
    def __init__(self) -> None:
        self._tasks: Dict[str, asyncio.Task] = {}
        self._reserved: Set[str] = set()
        self._counter = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def is_running(self, name: str) -> bool:
        """True while ``name`` is reserved or its task has not finished."""
        if name in self._reserved:
            return True
        task = self._tasks.get(name)
        return task is not None and not task.done()

    def reserve(self, name: str) -> bool:
        """
        Claim ``name`` before the caller's first ``await``.

        Returns False when the name is already reserved or running.  The
        claim is handed over by ``spawn`` or dropped with ``release``.
        """
        if self.is_running(name):
            return False
        self._reserved.add(name)
        return True

    def release(self, name: str) -> None:
        self._reserved.discard(name)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: Optional[str] = None) -> asyncio.Task:
        """Schedule ``coro`` and keep it alive until it finishes."""
        self._counter += 1
        name = name or f"bg-{self._counter}"
        existing = self._tasks.get(name)
        if existing is not None and not existing.done():
            coro.close()
            raise RuntimeError(f"Background task {name} is already running")
        self._reserved.discard(name)
        task = asyncio.create_task(coro, name=name)
        self._tasks[name] = task
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        name = task.get_name()
        if self._tasks.get(name) is task:
            del self._tasks[name]
        if task.cancelled():
            logger.warning("Background task %s was cancelled", name)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s crashed", name, exc_info=exc)
        else:
            logger.debug("Background task %s finished", name)

    async def drain(self, timeout: float = 30.0) -> None:
        """Wait for in-flight tasks; cancel whatever is still running after ``timeout``."""
        if not self._tasks:
            return
        tasks = list(self._tasks.values())
        logger.info("Waiting for %d background task(s) to finish", len(tasks))
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("Cancelled %d background task(s) at shutdown", len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)
