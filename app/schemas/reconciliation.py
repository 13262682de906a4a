from datetime import datetime
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field


class AuthoritativeParticipant(BaseModel):
    """
    One row of the post-meeting participant report.

    Zoom reports one row per connection, so a participant who reconnected
    appears several times with the same `id`/`user_id`.
    """

    id: str | None = None
    user_id: str | None = None
    user_name: str | None = None
    email: str | None = None
    join_time: Any = None
    leave_time: Any = None
    duration: int = Field(0, description="Attended seconds for this row.")

    @classmethod
    def from_api(cls, raw: Mapping[str, Any]) -> "AuthoritativeParticipant":
        def _text(key: str) -> str | None:
            value = raw.get(key)
            if value is None:
                return None
            text = str(value).strip()
            return text or None

        try:
            duration = int(raw.get("duration") or 0)
        except (TypeError, ValueError):
            duration = 0

        return cls(
            id=_text("id"),
            user_id=_text("user_id"),
            user_name=_text("user_name") or _text("name"),
            email=_text("email") or _text("user_email"),
            join_time=raw.get("join_time"),
            leave_time=raw.get("leave_time"),
            duration=max(duration, 0),
        )


class ReconciliationEntryError(BaseModel):
    participant: str | None = None
    error: str
    type: str = "participant_error"


class ReconciliationResult(BaseModel):
    """
    Outcome of one reconciliation run for a meeting.
    """

    meeting_id: str
    meeting_uuid: str | None = None
    success: bool = False
    already_reconciled: bool = Field(
        False,
        description="Meeting was reconciled before and the run was not forced; nothing was done.",
    )
    queued_for_retry: bool = False
    report_missing: bool = Field(
        False,
        description="The report API had no participant data (404); verdicts use event data only.",
    )
    event_sessions: int = 0
    authoritative_participants: int = 0
    created: int = 0
    updated: int = 0
    matched: int = 0
    verdicts_written: int = 0
    errors: list[ReconciliationEntryError] = Field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None


class ReconciliationQueueItemRead(BaseModel):
    """
    Public representation of a queued reconciliation.
    """

    model_config = ConfigDict(from_attributes=True)

    meeting_uuid: str
    meeting_id: str | None = None
    queued_at: datetime
    last_attempt_at: datetime | None = None
    attempts: int
    priority: int
    last_error: str | None = None
    exhausted: bool


class QueueDrainSummary(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    exhausted: int = 0
    skipped: int = 0
    results: list[ReconciliationResult] = Field(default_factory=list)
