from sqlalchemy import Boolean, Column, Integer, String, Text

from app.db.base_class import Base
from app.db.types import UTCDateTime


class ReconciliationQueueItem(Base):
    """
    A meeting occurrence waiting for (another) reconciliation attempt.

    Keyed by the occurrence uuid: a recurring `meeting_id` maps to several
    occurrences and each one is retried on its own.

    Items are removed only after a successful reconciliation. When the retry
    budget is used up the row is kept with `exhausted=True` so the failure
    stays visible instead of disappearing.
    """

    __tablename__ = "reconciliation_queue"

    id = Column(Integer, primary_key=True, index=True)

    meeting_uuid = Column(String(128), nullable=False, unique=True, index=True)
    meeting_id = Column(String(64), nullable=True, index=True)

    queued_at = Column(UTCDateTime(), nullable=False)
    last_attempt_at = Column(UTCDateTime(), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    # Lower numbers are drained first.
    priority = Column(Integer, nullable=False, default=5)

    last_error = Column(Text, nullable=True)
    exhausted = Column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return (
            f"<ReconciliationQueueItem meeting_uuid={self.meeting_uuid} "
            f"meeting_id={self.meeting_id} attempts={self.attempts} exhausted={self.exhausted}>"
        )
