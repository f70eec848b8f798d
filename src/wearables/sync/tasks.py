"""Supervised background tasks.

Work detached from a request (webhook processing, the initial sync after a
new connection, the poll loop) is spawned here instead of as a bare
``asyncio.create_task``: handles are kept until the task finishes, failures
are logged, and shutdown waits for in-flight work before cancelling it.

Loops that never finish on their own (the poller) are spawned with
``long_running=True``; shutdown cancels them first instead of waiting on them.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

logger = logging.getLogger("carelink.wearables.sync.tasks")


class BackgroundTaskSupervisor:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self._long_running: set[asyncio.Task[Any]] = set()
        self._closed = False

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(
        self,
        coro: Coroutine[Any, Any, Any],
        name: str | None = None,
        long_running: bool = False,
    ) -> asyncio.Task[Any]:
        """Schedule ``coro`` and track it until completion.

        Raises:
            RuntimeError: If the supervisor is shutting down.
        """
        if self._closed:
            coro.close()
            raise RuntimeError("Background task supervisor is shut down")
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        if long_running:
            self._long_running.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        self._long_running.discard(task)
        if task.cancelled():
            logger.info("Background task %s cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed: %s", task.get_name(), exc, exc_info=exc
            )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for outstanding tasks, then cancel whatever is left after ``timeout``."""
        if not self._tasks:
            return
        pending = set(self._tasks)
        logger.info("Draining %d background task(s)", len(pending))
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("Cancelled %d background task(s) after drain timeout", len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)

    async def shutdown(self, timeout: float | None = None) -> None:
        """Refuse new work, stop long-running loops, then drain the rest."""
        self._closed = True
        loops = set(self._long_running)
        for task in loops:
            task.cancel()
        if loops:
            await asyncio.gather(*loops, return_exceptions=True)
        await self.drain(timeout)
