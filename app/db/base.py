# Import ORM models so that Base.metadata is aware of them.
# Anything that needs the full metadata (schema creation) imports Base from here.
from app.db.base_class import Base  # noqa: F401
from app.models.meeting_record import MeetingRecord  # noqa: F401
from app.models.participant_session import ParticipantSession  # noqa: F401
from app.models.reconciliation_queue_item import ReconciliationQueueItem  # noqa: F401
