"""Background task scheduling for the pipeline.

Two kinds of work run outside the request that triggered them:

- fire-and-forget jobs (an evaluation, a feedback turn) started with
  ``spawn``; their failures are logged and never reach the caller
- keyed delayed jobs (the post-publish deployment check) started with
  ``schedule``; scheduling the same key again cancels the pending job so
  only the newest one runs
"""

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class TaskScheduler:
    """Registry of background asyncio tasks."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self._delayed: dict[str, asyncio.Task[Any]] = {}

    def spawn(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """Run ``coro`` in the background; exceptions are logged only."""
        task = asyncio.create_task(self._guard(name, coro), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def schedule(
        self,
        key: str,
        delay: float,
        factory: Callable[[], Awaitable[Any]],
    ) -> asyncio.Task[Any]:
        """Run ``factory()`` after ``delay`` seconds, superseding any pending job for ``key``."""
        previous = self._delayed.pop(key, None)
        if previous is not None and not previous.done():
            previous.cancel()
            logger.debug("delayed_task_superseded", key=key)

        async def _run_later() -> None:
            await asyncio.sleep(delay)
            await factory()

        task = asyncio.create_task(self._guard(key, _run_later()), name=f"delayed_{key}")
        self._delayed[key] = task

        def _remove(t: asyncio.Task[Any], k: str = key) -> None:
            if self._delayed.get(k) is t:
                del self._delayed[k]

        task.add_done_callback(_remove)
        logger.debug("delayed_task_scheduled", key=key, delay=delay)
        return task

    def cancel(self, key: str) -> bool:
        task = self._delayed.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def pending(self, key: str) -> bool:
        task = self._delayed.get(key)
        return task is not None and not task.done()

    @property
    def active_count(self) -> int:
        return len(self._tasks) + len(self._delayed)

    async def shutdown(self) -> None:
        """Cancel every outstanding task and wait for them to finish."""
        tasks = [*self._tasks, *self._delayed.values()]
        self._delayed.clear()
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("scheduler_shutdown", cancelled=len(tasks))

    async def _guard(self, name: str, coro: Awaitable[Any]) -> Any:
        try:
            return await coro
        except asyncio.CancelledError:
            logger.debug("background_task_cancelled", task=name)
            raise
        except Exception as e:
            logger.error(
                "background_task_failed",
                task=name,
                error_type=type(e).__name__,
                error=str(e),
            )
            return None
