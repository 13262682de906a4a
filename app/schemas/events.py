from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, Field


class EventValidationError(ValueError):
    """
    Raised when an inbound lifecycle event cannot be normalized into a
    `LifecycleEvent` (missing type, unknown type, missing meeting identity,
    participant event without any participant identity).
    """


class EventType(str, Enum):
    MEETING_STARTED = "meeting_started"
    MEETING_ENDED = "meeting_ended"
    PARTICIPANT_JOINED = "participant_joined"
    PARTICIPANT_LEFT = "participant_left"

    @classmethod
    def parse(cls, raw: Any) -> "EventType":
        """
        Accept both the internal names and the webhook names
        (`meeting.participant_joined`, ...).
        """
        if not isinstance(raw, str) or not raw.strip():
            raise EventValidationError("Event type is missing")
        name = raw.strip().lower()
        if name.startswith("meeting."):
            name = name[len("meeting."):]
            if name in ("started", "ended"):
                name = f"meeting_{name}"
        try:
            return cls(name)
        except ValueError:
            raise EventValidationError(f"Unsupported event type: {raw!r}") from None


class ParticipantInfo(BaseModel):
    """
    Participant block of a lifecycle event. Timestamps are kept raw; the
    ingestion layer resolves them with an explicit fallback.
    """

    participant_uuid: str = Field(
        ...,
        description="Stable per-meeting participant identity (falls back to id/user id/email/name).",
    )
    id: str | None = Field(None, description="Participant id within the meeting.")
    user_id: str | None = Field(None, description="External user identifier.")
    name: str | None = None
    email: str | None = None
    join_time: Any = None
    leave_time: Any = None


class LifecycleEvent(BaseModel):
    """
    Strict, normalized view of an inbound meeting lifecycle event.

    Everything downstream of the ingestion boundary works on this shape only.
    """

    event_type: EventType
    meeting_id: str
    meeting_uuid: str
    meeting_topic: str | None = None
    scheduled_duration_minutes: int | None = None
    start_time: Any = None
    end_time: Any = None
    event_ts: Any = None
    participant: ParticipantInfo | None = None
    received_at: datetime

    @property
    def is_participant_event(self) -> bool:
        return self.event_type in (EventType.PARTICIPANT_JOINED, EventType.PARTICIPANT_LEFT)

    @property
    def idempotency_key(self) -> str:
        """
        eventType + meetingId + participantUuid (or "none") + event timestamp.

        When the delivery carries no event timestamp, the most specific
        payload timestamp is used so redeliveries still collapse.
        """
        participant_uuid = self.participant.participant_uuid if self.participant else "none"
        return f"{self.event_type.value}:{self.meeting_id}:{participant_uuid}:{self._timestamp_component()}"

    def _timestamp_component(self) -> str:
        candidates: list[Any] = [self.event_ts]
        if self.participant is not None:
            if self.event_type == EventType.PARTICIPANT_LEFT:
                candidates.append(self.participant.leave_time)
            candidates.append(self.participant.join_time)
        if self.event_type == EventType.MEETING_ENDED:
            candidates.append(self.end_time)
        candidates.append(self.start_time)

        for value in candidates:
            if value not in (None, ""):
                return str(value)
        return self.received_at.isoformat()

    @classmethod
    def from_payload(cls, raw: Mapping[str, Any], received_at: datetime) -> "LifecycleEvent":
        """
        Normalize either a webhook envelope or an already flattened event.

        Webhook envelope::

            {"event": "meeting.participant_joined", "event_ts": 1736500000000,
             "payload": {"object": {"id": ..., "uuid": ..., "topic": ...,
                                    "participant": {...}}}}

        Flattened::

            {"eventType": "participant_joined", "meetingId": ..., "meetingUuid": ...,
             "meetingTopic": ..., "participant": {...}, "timestamp": ...}
        """
        if not isinstance(raw, Mapping):
            raise EventValidationError("Event must be a JSON object")

        event_type = EventType.parse(raw.get("eventType") or raw.get("event"))

        payload = raw.get("payload")
        obj: Mapping[str, Any] = {}
        if isinstance(payload, Mapping) and isinstance(payload.get("object"), Mapping):
            obj = payload["object"]

        meeting_id = _first_str(raw.get("meetingId"), obj.get("id"))
        if meeting_id is None:
            raise EventValidationError("Event has no meeting id")
        meeting_uuid = _first_str(raw.get("meetingUuid"), obj.get("uuid")) or meeting_id

        participant_raw = raw.get("participant")
        if participant_raw is None:
            participant_raw = obj.get("participant")

        participant = None
        if participant_raw is not None:
            if not isinstance(participant_raw, Mapping):
                raise EventValidationError("Participant block must be an object")
            participant = _parse_participant(participant_raw)

        if event_type in (EventType.PARTICIPANT_JOINED, EventType.PARTICIPANT_LEFT) and participant is None:
            raise EventValidationError(f"{event_type.value} event has no participant identity")

        return cls(
            event_type=event_type,
            meeting_id=meeting_id,
            meeting_uuid=meeting_uuid,
            meeting_topic=_first_str(raw.get("meetingTopic"), obj.get("topic")),
            scheduled_duration_minutes=_as_int(
                raw.get("scheduledDuration") if raw.get("scheduledDuration") is not None else obj.get("duration")
            ),
            start_time=raw.get("startTime") or obj.get("start_time"),
            end_time=raw.get("endTime") or obj.get("end_time"),
            event_ts=raw.get("timestamp") if raw.get("timestamp") is not None else raw.get("event_ts"),
            participant=participant,
            received_at=received_at,
        )


class IngestEffect(str, Enum):
    SESSION_OPENED = "session_opened"
    SESSION_REUSED = "session_reused"
    SESSION_CLOSED = "session_closed"
    SESSION_SYNTHESIZED = "session_synthesized"
    SESSION_BACKFILLED = "session_backfilled"
    MEETING_STARTED = "meeting_started"
    MEETING_ENDED = "meeting_ended"
    NO_CHANGE = "no_change"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


class IngestResult(BaseModel):
    """
    Outcome of `EventIngestor.ingest()`.

    Duplicates are accepted (as no-ops); only malformed events are not.
    """

    accepted: bool
    effect: IngestEffect
    idempotency_key: str | None = None
    meeting_id: str | None = None
    participant_uuid: str | None = None
    session_id: int | None = None
    sessions_closed: int = 0
    timestamp_substituted: bool = False
    detail: str | None = None


def _parse_participant(raw: Mapping[str, Any]) -> ParticipantInfo | None:
    name = _first_str(raw.get("name"), raw.get("user_name"))
    email = _first_str(raw.get("email"))
    participant_id = _first_str(raw.get("id"))
    user_id = _first_str(raw.get("user_id"))

    identity = _first_str(raw.get("uuid"), raw.get("participant_uuid"), participant_id, user_id)
    if identity is None and email:
        identity = f"email:{email.lower()}"
    if identity is None and name:
        identity = f"name:{name.lower()}"
    if identity is None:
        return None

    return ParticipantInfo(
        participant_uuid=identity,
        id=participant_id,
        user_id=user_id,
        name=name,
        email=email,
        join_time=raw.get("join_time"),
        leave_time=raw.get("leave_time"),
    )


def _first_str(*values: Any) -> str | None:
    for value in values:
        if value is None or isinstance(value, bool):
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def _as_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None
