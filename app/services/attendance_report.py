# app/services/attendance_report.py
from __future__ import annotations

from collections import Counter
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.participant_session import ParticipantSession
from app.schemas.attendance import AttendanceStatus, AttendanceVerdict, MeetingSummary
from app.services.meeting_lookup import IdentityNotFound, get_meeting, list_meeting_sessions
from app.services.session_aggregator import SessionAggregator


def _sessions_for_identity(
    sessions: list[ParticipantSession],
    identity: str,
) -> list[ParticipantSession]:
    """
    Resolve `identity` (participant uuid, participant id, user id, email or
    name) to the full session group of that participant.
    """
    folded = identity.strip().casefold()

    def _hit(s: ParticipantSession) -> bool:
        if identity in (s.participant_uuid, s.participant_id, s.zoom_user_id):
            return True
        for value in (s.participant_email, s.participant_name):
            if value and value.strip().casefold() == folded:
                return True
        return False

    first = next((s for s in sessions if _hit(s)), None)
    if first is None:
        return []
    return [s for s in sessions if s.participant_uuid == first.participant_uuid]


async def get_verdict(
    db: AsyncSession,
    meeting_id: str,
    identity: str,
    aggregator: SessionAggregator,
    *,
    now: datetime | None = None,
) -> AttendanceVerdict:
    """
    Current verdict for one participant of a meeting.

    Raises
    ------
    MeetingNotFound
        No meeting with that id or uuid.
    IdentityNotFound
        The meeting has no session for that identity.
    """
    meeting = await get_meeting(db, meeting_id)
    sessions = await list_meeting_sessions(db, meeting.meeting_uuid)

    group = _sessions_for_identity(sessions, identity)
    if not group:
        raise IdentityNotFound(f"No sessions for {identity!r} in meeting {meeting_id}")

    return aggregator.aggregate(
        group,
        meeting.effective_duration_minutes,
        meeting_sessions=sessions,
        now=now,
    )


async def get_meeting_summary(
    db: AsyncSession,
    meeting_id: str,
    aggregator: SessionAggregator,
    *,
    now: datetime | None = None,
) -> MeetingSummary:
    """
    Build per-meeting statistics from the stored sessions.

    Verdicts are recomputed on every call, so an in-progress meeting shows
    live values and a reconciled one matches the annotated sessions.
    """
    meeting = await get_meeting(db, meeting_id)
    sessions = await list_meeting_sessions(db, meeting.meeting_uuid)

    verdicts = list(
        aggregator.aggregate_meeting(sessions, meeting.effective_duration_minutes, now=now).values()
    )

    total = len(verdicts)
    present = sum(1 for v in verdicts if v.status == AttendanceStatus.PRESENT)
    absent = sum(1 for v in verdicts if v.status == AttendanceStatus.ABSENT)
    in_progress = sum(1 for v in verdicts if v.status == AttendanceStatus.IN_PROGRESS)

    attendance_rate = round(present / total * 100, 2) if total else 0.0
    average_pct = round(sum(v.attendance_percentage for v in verdicts) / total, 2) if total else 0.0

    duration = meeting.effective_duration_minutes
    if duration is None:
        duration = aggregator.derive_meeting_duration_minutes(sessions)

    return MeetingSummary(
        meeting_id=meeting.meeting_id,
        meeting_uuid=meeting.meeting_uuid,
        topic=meeting.topic,
        status=meeting.status,
        attendance_calculated=bool(meeting.attendance_calculated),
        meeting_duration_minutes=round(duration, 2) if duration is not None else None,
        total_participants=total,
        present_count=present,
        absent_count=absent,
        in_progress_count=in_progress,
        attendance_rate=attendance_rate,
        average_attendance_percentage=average_pct,
        total_sessions=len(sessions),
        reconciled_sessions=sum(1 for s in sessions if s.is_reconciled),
        sessions_by_source=dict(Counter(s.source for s in sessions)),
        threshold=aggregator.threshold,
        verdicts=verdicts,
    )
