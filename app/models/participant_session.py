from sqlalchemy import Boolean, Column, Index, Integer, String

from app.db.base_class import Base
from app.db.types import UTCDateTime
from app.schemas.meeting import ConnectionStatus, SessionSource


class ParticipantSession(Base):
    """
    One continuous join-to-leave interval of a participant in a meeting.

    A person who reconnects owns several rows sharing the same
    `participant_uuid`; at most one of them is open (`leave_time` is NULL)
    at any time.
    """

    __tablename__ = "participant_sessions"

    id = Column(Integer, primary_key=True, index=True)

    meeting_id = Column(String(64), nullable=False, index=True)
    meeting_uuid = Column(String(128), nullable=False, index=True)

    participant_uuid = Column(String(255), nullable=False)
    participant_id = Column(String(128), nullable=True)
    zoom_user_id = Column(String(128), nullable=True)
    participant_name = Column(String(255), nullable=True)
    participant_email = Column(String(255), nullable=True)

    join_time = Column(UTCDateTime(), nullable=False)
    leave_time = Column(UTCDateTime(), nullable=True)
    duration_seconds = Column(Integer, nullable=False, default=0)

    connection_status = Column(
        String(16),
        nullable=False,
        default=ConnectionStatus.IN_MEETING.value,
    )
    source = Column(
        String(16),
        nullable=False,
        default=SessionSource.EVENT_STREAM.value,
    )

    is_reconciled = Column(Boolean, nullable=False, default=False)
    reconciled_at = Column(UTCDateTime(), nullable=True)
    timestamp_substituted = Column(Boolean, nullable=False, default=False)

    attendance_percentage = Column(Integer, nullable=True)
    attendance_status = Column(String(16), nullable=True)

    __table_args__ = (
        Index(
            "ix_participant_sessions_meeting_participant",
            "meeting_uuid",
            "participant_uuid",
        ),
    )

    @property
    def is_open(self) -> bool:
        return self.leave_time is None

    def close(self, leave_time) -> None:
        """
        Close the session at `leave_time`, clamped so it never precedes the join.
        """
        if leave_time < self.join_time:
            leave_time = self.join_time
        self.leave_time = leave_time
        self.duration_seconds = int(round((leave_time - self.join_time).total_seconds()))
        self.connection_status = ConnectionStatus.LEFT.value

    def __repr__(self) -> str:
        return (
            f"<ParticipantSession id={self.id} meeting_uuid={self.meeting_uuid} "
            f"participant={self.participant_uuid} join={self.join_time} "
            f"leave={self.leave_time}>"
        )
