from sqlalchemy import Boolean, Column, Integer, String, Text

from app.db.base_class import Base
from app.db.types import UTCDateTime
from app.schemas.meeting import MeetingStatus


class MeetingRecord(Base):
    """
    One occurrence of a video-conference meeting as observed by the ledger.

    `meeting_id` is the (possibly recurring) numeric meeting id; `meeting_uuid`
    identifies this particular occurrence and is what the report API expects.
    """

    __tablename__ = "meeting_records"

    id = Column(Integer, primary_key=True, index=True)

    meeting_id = Column(String(64), nullable=False, index=True)
    meeting_uuid = Column(String(128), nullable=False, unique=True, index=True)
    topic = Column(String(255), nullable=True)

    scheduled_duration_minutes = Column(Integer, nullable=True)
    actual_start_time = Column(UTCDateTime(), nullable=True)
    actual_end_time = Column(UTCDateTime(), nullable=True)

    status = Column(
        String(16),
        nullable=False,
        default=MeetingStatus.WAITING.value,
    )

    attendance_calculated = Column(Boolean, nullable=False, default=False)
    attendance_calculated_at = Column(UTCDateTime(), nullable=True)
    reconciliation_error = Column(Text, nullable=True)

    created_at = Column(UTCDateTime(), nullable=False)

    @property
    def actual_duration_minutes(self) -> float | None:
        """
        Observed duration from the start/end lifecycle events, in fractional
        minutes and at least 1 minute.
        """
        if self.actual_start_time is None or self.actual_end_time is None:
            return None
        seconds = (self.actual_end_time - self.actual_start_time).total_seconds()
        return max(1.0, seconds / 60.0)

    @property
    def effective_duration_minutes(self) -> float | None:
        """
        Duration used for verdicts: actual if known, otherwise scheduled.
        """
        actual = self.actual_duration_minutes
        if actual is not None:
            return actual
        if self.scheduled_duration_minutes and self.scheduled_duration_minutes > 0:
            return float(self.scheduled_duration_minutes)
        return None

    def __repr__(self) -> str:
        return (
            f"<MeetingRecord id={self.id} meeting_id={self.meeting_id} "
            f"uuid={self.meeting_uuid} status={self.status}>"
        )
