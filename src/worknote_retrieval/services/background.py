"""Detached background continuations for write-path embedding."""

import asyncio
from typing import Any, Awaitable, Dict, Optional, Set

from worknote_retrieval.utils.logging import get_logger, log_error

logger = get_logger("background")


class BackgroundTaskRunner:
    """
    Fire-and-forget task holder.

    ``spawn`` returns immediately; the task's failure is logged and never
    re-raised to whoever spawned it. Callers must not assume the task has
    finished when their own request returns. ``drain`` waits for everything
    still running (shutdown, tests).
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(
        self,
        coro: Awaitable[Any],
        name: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> asyncio.Task:
        context = context or {}

        async def _run() -> Any:
            try:
                return await coro
            except asyncio.CancelledError:
                logger.warning(f"Background task cancelled: {name}", extra=context)
                raise
            except Exception as e:
                log_error(e, context={"task": name, **context})
                return None

        task = asyncio.create_task(_run(), name=name)
        # the event loop keeps only weak references to tasks
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
