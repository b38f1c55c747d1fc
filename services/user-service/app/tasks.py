"""
Supervisor for work that must outlive the request that started it.

Follow/unfollow handlers answer 202 and hand the actual store/cache/broker
work to `spawn`. The event loop only keeps weak references to tasks, so the
supervisor holds each one until it finishes; `drain` is called from the
application lifespan so a graceful shutdown lets in-flight work complete.
"""
import asyncio
import logging
from typing import Coroutine

from app.telemetry import BACKGROUND_TASKS_IN_FLIGHT

logger = logging.getLogger(__name__)


class BackgroundTaskSupervisor:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        BACKGROUND_TASKS_IN_FLIGHT.inc()
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        BACKGROUND_TASKS_IN_FLIGHT.dec()
        if task.cancelled():
            logger.warning("Background task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            # Work submitted here has its own error boundary; reaching this is a bug.
            logger.error(
                "Background task %s escaped its error boundary",
                task.get_name(),
                exc_info=exc,
            )

    async def drain(self, timeout: float) -> None:
        """Wait up to `timeout` seconds for outstanding tasks, then cancel the rest."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        logger.info("Waiting for %d background task(s) to finish", len(pending))
        try:
            await asyncio.wait_for(
                asyncio.gather(*pending, return_exceptions=True),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Background tasks did not finish within %.1fs", timeout)
            for task in pending:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)


# Singleton
background_tasks = BackgroundTaskSupervisor()
