# app/services/event_ingestion.py
from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime
from typing import TYPE_CHECKING, Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock, system_clock
from app.models.meeting_record import MeetingRecord
from app.models.participant_session import ParticipantSession
from app.schemas.events import (
    EventType,
    EventValidationError,
    IngestEffect,
    IngestResult,
    LifecycleEvent,
    ParticipantInfo,
)
from app.schemas.meeting import ConnectionStatus, MeetingStatus, SessionSource
from app.services.notifications import NotificationChannel, NotificationKind
from app.services.reconciliation_queue import enqueue_reconciliation
from app.services.timestamps import ResolvedTimestamp, parse_utc, resolve_timestamp

if TYPE_CHECKING:
    from app.services.reconciliation import ReconciliationDispatcher

logger = logging.getLogger(__name__)


class IdempotencyLedger:
    """
    Bounded memory of recently seen idempotency keys.

    Holds at most `max_size` keys; when full the oldest key is evicted.
    Redeliveries older than the window are still harmless because the
    session handlers are idempotent on their own (open sessions are
    reused, identical leave times are no-ops).
    """

    def __init__(self, max_size: int = 1000) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self._keys: "OrderedDict[str, None]" = OrderedDict()

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def remember(self, key: str) -> bool:
        """
        Record `key`. Returns False if it was already known.
        """
        if key in self._keys:
            return False
        self._keys[key] = None
        while len(self._keys) > self.max_size:
            self._keys.popitem(last=False)
        return True

    def forget(self, key: str) -> None:
        self._keys.pop(key, None)


class EventIngestor:
    """
    Entry point for meeting lifecycle events.

    Rules
    -----
    - Malformed events are rejected (`accepted=False`) and logged; they
      never raise out of `ingest()`.
    - An event whose idempotency key was seen recently is accepted as a
      no-op (`effect=duplicate`).
    - Meeting status only moves forward: waiting -> started -> ended.
    - A participant has at most one open session per meeting; a join while
      one is open reuses it, a leave closes the most recent open one.
    - `meeting_ended` force-closes every open session at the end time and
      hands the meeting to reconciliation without waiting for it.
    """

    def __init__(
        self,
        *,
        clock: Clock = system_clock,
        notifier: Optional[NotificationChannel] = None,
        dispatcher: Optional["ReconciliationDispatcher"] = None,
        dedup_size: int = 1000,
    ) -> None:
        self.clock = clock
        self.notifier = notifier
        self.dispatcher = dispatcher
        self.ledger = IdempotencyLedger(dedup_size)
        self.stats = {"accepted": 0, "duplicates": 0, "rejected": 0}

    @property
    def dedup_history_size(self) -> int:
        return len(self.ledger)

    async def ingest(
        self,
        db: AsyncSession,
        raw_event: LifecycleEvent | Mapping[str, Any],
        *,
        received_at: Optional[datetime] = None,
    ) -> IngestResult:
        received_at = received_at or self.clock.now()

        if isinstance(raw_event, LifecycleEvent):
            event = raw_event
        else:
            try:
                event = LifecycleEvent.from_payload(raw_event, received_at)
            except EventValidationError as exc:
                self.stats["rejected"] += 1
                logger.warning("Rejected lifecycle event: %s", exc)
                return IngestResult(accepted=False, effect=IngestEffect.REJECTED, detail=str(exc))

        key = event.idempotency_key
        participant_uuid = event.participant.participant_uuid if event.participant else None

        if not self.ledger.remember(key):
            self.stats["duplicates"] += 1
            logger.debug("Duplicate event %s ignored", key)
            return IngestResult(
                accepted=True,
                effect=IngestEffect.DUPLICATE,
                idempotency_key=key,
                meeting_id=event.meeting_id,
                participant_uuid=participant_uuid,
            )

        try:
            if event.event_type == EventType.MEETING_STARTED:
                result = await self._on_meeting_started(db, event, key)
            elif event.event_type == EventType.MEETING_ENDED:
                result = await self._on_meeting_ended(db, event, key)
            elif event.event_type == EventType.PARTICIPANT_JOINED:
                result = await self._on_participant_joined(db, event, key)
            else:
                result = await self._on_participant_left(db, event, key)
        except Exception:
            # Let a redelivery retry the event.
            self.ledger.forget(key)
            await db.rollback()
            raise

        self.stats["accepted"] += 1
        return result

    # ------------------------------------------------------------------
    # Meeting events
    # ------------------------------------------------------------------

    async def _on_meeting_started(self, db: AsyncSession, event: LifecycleEvent, key: str) -> IngestResult:
        meeting = await self._get_or_create_meeting(db, event)
        start = self._resolve(event.start_time, event, "start_time")

        changed = self._advance(meeting, MeetingStatus.STARTED)
        if meeting.status != MeetingStatus.ENDED.value:
            if meeting.actual_start_time is None or (
                not start.substituted and start.value < meeting.actual_start_time
            ):
                meeting.actual_start_time = start.value
                changed = True

        await db.commit()
        logger.info("Meeting %s started at %s", meeting.meeting_id, meeting.actual_start_time)
        return IngestResult(
            accepted=True,
            effect=IngestEffect.MEETING_STARTED if changed else IngestEffect.NO_CHANGE,
            idempotency_key=key,
            meeting_id=event.meeting_id,
            timestamp_substituted=start.substituted,
        )

    async def _on_meeting_ended(self, db: AsyncSession, event: LifecycleEvent, key: str) -> IngestResult:
        meeting = await self._get_or_create_meeting(db, event)

        if meeting.status == MeetingStatus.ENDED.value:
            logger.info("Meeting %s already ended; redundant end event ignored", meeting.meeting_id)
            return IngestResult(
                accepted=True,
                effect=IngestEffect.NO_CHANGE,
                idempotency_key=key,
                meeting_id=event.meeting_id,
                detail="meeting already ended",
            )

        end = self._resolve(event.end_time, event, "end_time")
        meeting.status = MeetingStatus.ENDED.value
        meeting.actual_end_time = end.value
        if meeting.actual_start_time is None:
            meeting.actual_start_time = parse_utc(event.start_time) or await self._earliest_join(
                db, meeting.meeting_uuid
            ) or end.value

        open_sessions = await self._open_sessions(db, meeting.meeting_uuid)
        for session in open_sessions:
            self._close(session, end.value)

        await db.commit()
        logger.info(
            "Meeting %s ended at %s; force-closed %d open session(s)",
            meeting.meeting_id,
            end.value.isoformat(),
            len(open_sessions),
        )

        for session in open_sessions:
            self._notify(NotificationKind.PARTICIPANT_LEFT, session, forced=True)

        await self._trigger_reconciliation(db, meeting)

        return IngestResult(
            accepted=True,
            effect=IngestEffect.MEETING_ENDED,
            idempotency_key=key,
            meeting_id=event.meeting_id,
            sessions_closed=len(open_sessions),
            timestamp_substituted=end.substituted,
        )

    # ------------------------------------------------------------------
    # Participant events
    # ------------------------------------------------------------------

    async def _on_participant_joined(self, db: AsyncSession, event: LifecycleEvent, key: str) -> IngestResult:
        participant = event.participant
        meeting = await self._get_or_create_meeting(db, event)
        join = self._resolve(participant.join_time, event, "join_time")

        if meeting.status == MeetingStatus.WAITING.value:
            self._advance(meeting, MeetingStatus.STARTED)
            if meeting.actual_start_time is None:
                meeting.actual_start_time = join.value

        sessions = await self._participant_sessions(db, meeting.meeting_uuid, participant.participant_uuid)

        open_session = next((s for s in reversed(sessions) if s.is_open), None)
        if open_session is not None:
            self._fill_identity(open_session, participant)
            await db.commit()
            return self._participant_result(key, event, IngestEffect.SESSION_REUSED, open_session, join)

        same_join = next((s for s in sessions if s.join_time == join.value), None)
        if same_join is not None:
            await db.commit()
            return self._participant_result(key, event, IngestEffect.NO_CHANGE, same_join, join)

        placeholder = self._missed_join_placeholder(sessions, join.value)
        if placeholder is not None:
            # The leave arrived first; give its session the real join time.
            placeholder.join_time = join.value
            placeholder.close(placeholder.leave_time)
            placeholder.timestamp_substituted = join.substituted
            self._fill_identity(placeholder, participant)
            await db.commit()
            logger.info(
                "Late join for %s in meeting %s backfilled session %s",
                participant.participant_uuid,
                meeting.meeting_id,
                placeholder.id,
            )
            self._notify(NotificationKind.PARTICIPANT_JOINED, placeholder, backfilled=True)
            result = self._participant_result(key, event, IngestEffect.SESSION_BACKFILLED, placeholder, join)
            result.detail = "join arrived after its leave"
            return result

        session = ParticipantSession(
            meeting_id=meeting.meeting_id,
            meeting_uuid=meeting.meeting_uuid,
            participant_uuid=participant.participant_uuid,
            participant_id=participant.id,
            zoom_user_id=participant.user_id,
            participant_name=participant.name,
            participant_email=participant.email,
            join_time=join.value,
            leave_time=None,
            duration_seconds=0,
            connection_status=ConnectionStatus.IN_MEETING.value,
            source=SessionSource.EVENT_STREAM.value,
            is_reconciled=False,
            timestamp_substituted=join.substituted,
        )
        db.add(session)

        detail = None
        closed = 0
        if meeting.status == MeetingStatus.ENDED.value and meeting.actual_end_time is not None:
            # Late delivery: never leave a session open on an ended meeting.
            self._close(session, meeting.actual_end_time)
            detail = "meeting already ended; session closed at meeting end"
            closed = 1

        await db.commit()
        self._notify(NotificationKind.PARTICIPANT_JOINED, session)
        if closed:
            self._notify(NotificationKind.PARTICIPANT_LEFT, session, forced=True)

        result = self._participant_result(key, event, IngestEffect.SESSION_OPENED, session, join)
        result.sessions_closed = closed
        result.detail = detail
        return result

    async def _on_participant_left(self, db: AsyncSession, event: LifecycleEvent, key: str) -> IngestResult:
        participant = event.participant
        meeting = await self._get_or_create_meeting(db, event)
        leave = self._resolve(participant.leave_time, event, "leave_time")

        if meeting.status == MeetingStatus.WAITING.value:
            self._advance(meeting, MeetingStatus.STARTED)

        sessions = await self._participant_sessions(db, meeting.meeting_uuid, participant.participant_uuid)

        open_session = next((s for s in reversed(sessions) if s.is_open), None)
        if open_session is not None:
            self._fill_identity(open_session, participant)
            self._close(open_session, leave.value, substituted=leave.substituted)
            await db.commit()
            self._notify(NotificationKind.PARTICIPANT_LEFT, open_session)
            return self._participant_result(key, event, IngestEffect.SESSION_CLOSED, open_session, leave)

        if any(s.leave_time == leave.value for s in sessions):
            await db.commit()
            same = next(s for s in sessions if s.leave_time == leave.value)
            return self._participant_result(key, event, IngestEffect.NO_CHANGE, same, leave)

        force_closed = self._force_closed_session(sessions, meeting, leave.value)
        if force_closed is not None:
            # The real leave arrived after meeting_ended closed the session.
            self._close(force_closed, leave.value, substituted=leave.substituted)
            await db.commit()
            result = self._participant_result(key, event, IngestEffect.SESSION_CLOSED, force_closed, leave)
            result.detail = "corrected forced close"
            return result

        # Missed join: synthesize the session so the leave is not lost.
        join_time = parse_utc(participant.join_time)
        join_substituted = join_time is None
        if join_time is None:
            logger.warning(
                "Leave without join for %s in meeting %s; synthesizing session at leave time",
                participant.participant_uuid,
                meeting.meeting_id,
            )
            join_time = leave.value

        session = ParticipantSession(
            meeting_id=meeting.meeting_id,
            meeting_uuid=meeting.meeting_uuid,
            participant_uuid=participant.participant_uuid,
            participant_id=participant.id,
            zoom_user_id=participant.user_id,
            participant_name=participant.name,
            participant_email=participant.email,
            join_time=join_time,
            source=SessionSource.EVENT_STREAM.value,
            is_reconciled=False,
            timestamp_substituted=join_substituted or leave.substituted,
        )
        self._close(session, leave.value, substituted=join_substituted or leave.substituted)
        db.add(session)

        await db.commit()
        self._notify(NotificationKind.PARTICIPANT_LEFT, session, synthesized=True)
        return self._participant_result(key, event, IngestEffect.SESSION_SYNTHESIZED, session, leave)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve(self, value: Any, event: LifecycleEvent, field: str) -> ResolvedTimestamp:
        """
        Payload timestamp, else the event timestamp, else the receipt time.

        Anything but the payload value itself counts as a substitution.
        """
        fallback = parse_utc(event.event_ts) or event.received_at
        return resolve_timestamp(value, fallback, field=field)

    @staticmethod
    def _advance(meeting: MeetingRecord, target: MeetingStatus) -> bool:
        current = MeetingStatus(meeting.status or MeetingStatus.WAITING.value)
        if target.rank > current.rank:
            meeting.status = target.value
            return True
        return False

    @staticmethod
    def _close(session: ParticipantSession, leave_time: datetime, *, substituted: bool = False) -> None:
        if leave_time < session.join_time:
            logger.warning(
                "Leave time %s precedes join time %s for %s; clamping",
                leave_time.isoformat(),
                session.join_time.isoformat(),
                session.participant_uuid,
            )
            substituted = True
        session.close(leave_time)
        if substituted:
            session.timestamp_substituted = True

    @staticmethod
    def _fill_identity(session: ParticipantSession, participant: ParticipantInfo) -> None:
        session.participant_id = session.participant_id or participant.id
        session.zoom_user_id = session.zoom_user_id or participant.user_id
        session.participant_name = session.participant_name or participant.name
        session.participant_email = session.participant_email or participant.email

    @staticmethod
    def _force_closed_session(
        sessions: list[ParticipantSession],
        meeting: MeetingRecord,
        leave_time: datetime,
    ) -> Optional[ParticipantSession]:
        if meeting.status != MeetingStatus.ENDED.value or meeting.actual_end_time is None:
            return None
        for session in reversed(sessions):
            if (
                session.leave_time == meeting.actual_end_time
                and session.join_time <= leave_time < session.leave_time
                and not session.is_reconciled
            ):
                return session
        return None

    @staticmethod
    def _missed_join_placeholder(
        sessions: list[ParticipantSession],
        join_time: datetime,
    ) -> Optional[ParticipantSession]:
        """
        Zero-length session synthesized by a leave that had no join yet,
        ending at or after `join_time`.
        """
        for session in sessions:
            if (
                session.leave_time is not None
                and session.timestamp_substituted
                and not session.is_reconciled
                and session.join_time == session.leave_time
                and session.leave_time >= join_time
            ):
                return session
        return None

    async def _get_or_create_meeting(self, db: AsyncSession, event: LifecycleEvent) -> MeetingRecord:
        result = await db.execute(
            select(MeetingRecord).where(MeetingRecord.meeting_uuid == event.meeting_uuid)
        )
        meeting = result.scalar_one_or_none()

        if meeting is None:
            meeting = MeetingRecord(
                meeting_id=event.meeting_id,
                meeting_uuid=event.meeting_uuid,
                topic=event.meeting_topic,
                scheduled_duration_minutes=event.scheduled_duration_minutes,
                status=MeetingStatus.WAITING.value,
                attendance_calculated=False,
                created_at=self.clock.now(),
            )
            db.add(meeting)
            await db.flush()
            logger.info("Tracking new meeting %s (%s)", event.meeting_id, event.meeting_uuid)
            return meeting

        if event.meeting_topic and not meeting.topic:
            meeting.topic = event.meeting_topic
        if event.scheduled_duration_minutes and not meeting.scheduled_duration_minutes:
            meeting.scheduled_duration_minutes = event.scheduled_duration_minutes
        return meeting

    @staticmethod
    async def _participant_sessions(
        db: AsyncSession,
        meeting_uuid: str,
        participant_uuid: str,
    ) -> list[ParticipantSession]:
        result = await db.execute(
            select(ParticipantSession)
            .where(
                ParticipantSession.meeting_uuid == meeting_uuid,
                ParticipantSession.participant_uuid == participant_uuid,
            )
            .order_by(ParticipantSession.join_time.asc(), ParticipantSession.id.asc())
        )
        return list(result.scalars().all())

    @staticmethod
    async def _open_sessions(db: AsyncSession, meeting_uuid: str) -> list[ParticipantSession]:
        result = await db.execute(
            select(ParticipantSession).where(
                ParticipantSession.meeting_uuid == meeting_uuid,
                ParticipantSession.leave_time.is_(None),
            )
        )
        return list(result.scalars().all())

    @staticmethod
    async def _earliest_join(db: AsyncSession, meeting_uuid: str) -> Optional[datetime]:
        result = await db.execute(
            select(ParticipantSession.join_time)
            .where(ParticipantSession.meeting_uuid == meeting_uuid)
            .order_by(ParticipantSession.join_time.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _trigger_reconciliation(self, db: AsyncSession, meeting: MeetingRecord) -> None:
        if self.dispatcher is not None:
            try:
                self.dispatcher.trigger(meeting.meeting_uuid)
                return
            except RuntimeError as exc:
                logger.error(
                    "Could not start reconciliation for meeting %s: %s; queueing",
                    meeting.meeting_id,
                    exc,
                )

        await enqueue_reconciliation(
            db,
            meeting.meeting_uuid,
            now=self.clock.now(),
            meeting_id=meeting.meeting_id,
            count_attempt=False,
        )

    def _notify(self, kind: NotificationKind, session: ParticipantSession, **extra: Any) -> None:
        if self.notifier is None:
            return
        self.notifier.emit(
            kind,
            session.meeting_id,
            participant_uuid=session.participant_uuid,
            participant_name=session.participant_name,
            join_time=session.join_time.isoformat() if session.join_time else None,
            leave_time=session.leave_time.isoformat() if session.leave_time else None,
            **extra,
        )

    @staticmethod
    def _participant_result(
        key: str,
        event: LifecycleEvent,
        effect: IngestEffect,
        session: ParticipantSession,
        ts: ResolvedTimestamp,
    ) -> IngestResult:
        return IngestResult(
            accepted=True,
            effect=effect,
            idempotency_key=key,
            meeting_id=event.meeting_id,
            participant_uuid=session.participant_uuid,
            session_id=session.id,
            sessions_closed=1 if effect == IngestEffect.SESSION_CLOSED else 0,
            timestamp_substituted=ts.substituted,
        )
