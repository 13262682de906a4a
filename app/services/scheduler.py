# app/services/scheduler.py
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List

logger = logging.getLogger(__name__)

PeriodicTask = Callable[[], Awaitable[object]]


class AsyncioScheduler:
    """
    Minimal `schedule_every(interval, task)` implementation for the host
    process. Each task runs in its own asyncio task; a failing run is
    logged and the loop keeps going.
    """

    def __init__(self) -> None:
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    def schedule_every(self, interval_seconds: float, task: PeriodicTask, *, name: str | None = None) -> asyncio.Task:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        label = name or getattr(task, "__name__", "periodic-task")
        handle = asyncio.get_running_loop().create_task(self._run(interval_seconds, task, label), name=label)
        self._tasks.append(handle)
        logger.info("Scheduled %s every %.1fs", label, interval_seconds)
        return handle

    async def _run(self, interval_seconds: float, task: PeriodicTask, label: str) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await task()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Scheduled task %s failed", label)

    async def shutdown(self) -> None:
        for handle in self._tasks:
            handle.cancel()
        for handle in self._tasks:
            try:
                await handle
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
