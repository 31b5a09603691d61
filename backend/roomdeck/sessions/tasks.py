"""Tracking for fire-and-forget asyncio tasks.

Stream callbacks are synchronous, but inbound messages pass through an
async hook chain. Each such unit of work is spawned as a task and kept
here until it finishes, so it is not garbage collected mid-flight and
so shutdown (and tests) can wait for in-flight work with ``drain()``.
"""
import asyncio
import logging
from typing import Any, Coroutine, Set

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """A set of in-flight tasks spawned on the running loop."""

    def __init__(self, name: str = "tasks") -> None:
        self._name = name
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Schedule ``coro`` on the running loop and track it.

        Raises:
            RuntimeError: If no event loop is running.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            raise
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[%s] background task failed: %s", self._name, exc, exc_info=exc)

    def __len__(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every tracked task (including ones spawned meanwhile) finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
            # Let done-callbacks and freshly scheduled flushes run.
            await asyncio.sleep(0)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
