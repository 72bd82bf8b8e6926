"""Detached background tasks whose failure never reaches the caller."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Set

logger = logging.getLogger(__name__)


class TaskRunner:
    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, name: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> asyncio.Task:
        """Run a blocking ``func`` in a worker thread without awaiting it."""

        async def _run() -> None:
            try:
                await asyncio.to_thread(func, *args, **kwargs)
            except Exception as exc:
                logger.warning("Background task %s failed: %s", name, exc)

        task = asyncio.get_running_loop().create_task(_run(), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
