# app/core/clock.py
from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone


class Clock:
    """
    Time source used by the gateway, ingestion and aggregation code.

    - `now()` returns an aware UTC wall-clock datetime (event/session times).
    - `monotonic()` is used for pacing, backoff and cache expiry.
    - `sleep()` suspends the current task.

    Tests substitute a fake implementation that advances time on `sleep()`.
    """

    def now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)
        else:
            await asyncio.sleep(0)


system_clock = Clock()
