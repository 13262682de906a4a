# app/services/meeting_lookup.py
from __future__ import annotations

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.meeting_record import MeetingRecord
from app.models.participant_session import ParticipantSession


class MeetingNotFound(LookupError):
    """No meeting record exists for the given meeting id or uuid."""


class IdentityNotFound(LookupError):
    """The meeting exists but has no sessions for the requested identity."""


async def get_meeting(db: AsyncSession, meeting_id: str) -> MeetingRecord:
    """
    Resolve a meeting by numeric id or occurrence uuid.

    A recurring meeting id maps to several occurrences; the most recently
    created one is returned.
    """
    stmt = (
        select(MeetingRecord)
        .where(or_(MeetingRecord.meeting_id == meeting_id, MeetingRecord.meeting_uuid == meeting_id))
        .order_by(MeetingRecord.created_at.desc(), MeetingRecord.id.desc())
        .limit(1)
    )
    result = await db.execute(stmt)
    meeting = result.scalar_one_or_none()
    if meeting is None:
        raise MeetingNotFound(f"Meeting {meeting_id} not found")
    return meeting


async def get_meeting_by_uuid(db: AsyncSession, meeting_uuid: str) -> MeetingRecord:
    result = await db.execute(select(MeetingRecord).where(MeetingRecord.meeting_uuid == meeting_uuid))
    meeting = result.scalar_one_or_none()
    if meeting is None:
        raise MeetingNotFound(f"Meeting occurrence {meeting_uuid} not found")
    return meeting


async def list_meeting_sessions(db: AsyncSession, meeting_uuid: str) -> list[ParticipantSession]:
    result = await db.execute(
        select(ParticipantSession)
        .where(ParticipantSession.meeting_uuid == meeting_uuid)
        .order_by(ParticipantSession.join_time.asc(), ParticipantSession.id.asc())
    )
    return list(result.scalars().all())
