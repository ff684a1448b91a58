"""Fire-and-forget coroutine scheduling.

Side work (bus notifications, learning extraction) must never fail the
caller. Failures are logged and dropped. Strong references are held until
each task finishes so the event loop does not collect them early.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

from agentorg.logging import get_logger

logger = get_logger(__name__)


class BackgroundTasks:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], event: str, **context: Any) -> asyncio.Task[Any]:
        """Schedule ``coro``; on failure log ``event`` with ``context``."""
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.warning(event, error=str(exc), error_type=type(exc).__name__, **context)

        task.add_done_callback(_done)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def wait(self) -> None:
        """Wait for every scheduled task, including ones spawned while waiting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
