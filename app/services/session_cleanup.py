# app/services/session_cleanup.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.clock import Clock, system_clock
from app.models.participant_session import ParticipantSession
from app.services.notifications import NotificationChannel, NotificationKind
from app.services.reconciliation_queue import enqueue_reconciliation

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    cutoff: datetime
    sessions_closed: int = 0
    meetings_queued: List[str] = field(default_factory=list)


class StaleSessionSweeper:
    """
    Force-closes participant sessions that have been open for longer than
    `max_open`.

    A session stays open forever when its leave event is never delivered.
    Swept sessions are closed at the sweep time and flagged
    `timestamp_substituted`; their meeting occurrences are queued for
    reconciliation so the participant report can replace the guess.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_open: timedelta,
        clock: Clock = system_clock,
        notifier: Optional[NotificationChannel] = None,
    ) -> None:
        if max_open <= timedelta(0):
            raise ValueError("max_open must be positive")
        self.session_factory = session_factory
        self.max_open = max_open
        self.clock = clock
        self.notifier = notifier
        self.total_closed = 0
        self.last_sweep: Optional[datetime] = None

    async def sweep(self) -> SweepResult:
        now = self.clock.now()
        result = SweepResult(cutoff=now - self.max_open)

        async with self.session_factory() as db:
            stmt = (
                select(ParticipantSession)
                .where(ParticipantSession.leave_time.is_(None))
                .where(ParticipantSession.join_time < result.cutoff)
                .order_by(ParticipantSession.join_time, ParticipantSession.id)
            )
            stale = list((await db.execute(stmt)).scalars().all())

            for session in stale:
                session.close(now)
                session.timestamp_substituted = True
                logger.warning(
                    "Closed stale session %s of %s in meeting %s (open since %s)",
                    session.id,
                    session.participant_uuid,
                    session.meeting_id,
                    session.join_time.isoformat(),
                )

            queued = {}
            for session in stale:
                queued.setdefault(session.meeting_uuid, session.meeting_id)
            for meeting_uuid, meeting_id in queued.items():
                await enqueue_reconciliation(
                    db,
                    meeting_uuid,
                    now=now,
                    meeting_id=meeting_id,
                    error="stale sessions closed by cleanup",
                    count_attempt=False,
                )
            await db.commit()

        for session in stale:
            self._notify(session)

        result.sessions_closed = len(stale)
        result.meetings_queued = list(queued)
        self.total_closed += len(stale)
        self.last_sweep = now

        if stale:
            logger.info(
                "Stale session sweep closed %d sessions across %d meetings",
                len(stale),
                len(queued),
            )
        else:
            logger.debug("Stale session sweep found nothing older than %s", result.cutoff.isoformat())
        return result

    def _notify(self, session: ParticipantSession) -> None:
        if self.notifier is None:
            return
        self.notifier.emit(
            NotificationKind.PARTICIPANT_LEFT,
            session.meeting_id,
            participant_uuid=session.participant_uuid,
            participant_name=session.participant_name,
            join_time=session.join_time.isoformat(),
            leave_time=session.leave_time.isoformat(),
            forced=True,
            stale=True,
        )
