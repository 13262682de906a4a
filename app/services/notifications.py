# app/services/notifications.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from app.core.clock import Clock, system_clock

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    PARTICIPANT_JOINED = "participant_joined"
    PARTICIPANT_LEFT = "participant_left"
    ATTENDANCE_CALCULATED = "attendance_calculated"
    RECONCILIATION_FAILED = "reconciliation_failed"


@dataclass(frozen=True)
class DomainNotification:
    kind: NotificationKind
    meeting_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    emitted_at: Optional[datetime] = None


class NotificationChannel:
    """
    Bounded outbound channel for domain notifications.

    The core only emits. A broadcaster (websocket fan-out, message bus, ...)
    consumes with `get()` / `drain()`. When the buffer is full the oldest
    notification is dropped so emitting never blocks ingestion.
    """

    def __init__(self, maxsize: int = 1000, clock: Clock = system_clock) -> None:
        self.clock = clock
        self._queue: asyncio.Queue[DomainNotification] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def __len__(self) -> int:
        return self._queue.qsize()

    def emit(self, kind: NotificationKind, meeting_id: str, **payload: Any) -> DomainNotification:
        notification = DomainNotification(
            kind=kind,
            meeting_id=meeting_id,
            payload=payload,
            emitted_at=self.clock.now(),
        )
        if self._queue.full():
            dropped = self._queue.get_nowait()
            self.dropped += 1
            logger.warning(
                "Notification channel full, dropping oldest %s for meeting %s",
                dropped.kind.value,
                dropped.meeting_id,
            )
        self._queue.put_nowait(notification)
        logger.debug("Emitted %s for meeting %s", kind.value, meeting_id)
        return notification

    async def get(self) -> DomainNotification:
        return await self._queue.get()

    def drain(self) -> List[DomainNotification]:
        """
        Remove and return every buffered notification (oldest first).
        """
        items: List[DomainNotification] = []
        while not self._queue.empty():
            items.append(self._queue.get_nowait())
        return items
