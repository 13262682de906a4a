from enum import Enum

from pydantic import BaseModel, Field


class AttendanceStatus(str, Enum):
    """
    Verdict for one identity in one meeting.
    """

    PRESENT = "Present"
    ABSENT = "Absent"
    IN_PROGRESS = "In Progress"


class DurationSource(str, Enum):
    """
    Where the meeting duration used as the percentage denominator came from.
    """

    MEETING = "meeting"
    PARTICIPANT_SPAN = "participant_span"
    SELF = "self"
    NONE = "none"


class AttendanceVerdict(BaseModel):
    """
    Derived attendance verdict for a participant identity.

    The verdict is recomputed from sessions every time; nothing in it is
    accumulated across runs.
    """

    participant_uuid: str | None = Field(
        None,
        description="Identity the sessions were grouped under.",
        examples=["8fd6b53e-5c1e-4f44-b2c4-1f3a0c5d9e21"],
    )
    participant_name: str | None = None
    participant_email: str | None = None
    total_attended_seconds: int = Field(
        ...,
        description="Sum of all session durations; open sessions count up to 'now'.",
        examples=[3300],
    )
    meeting_duration_minutes: float = Field(
        ...,
        description="Denominator used for the percentage.",
        examples=[60],
    )
    attendance_percentage: int = Field(
        ...,
        description="round(100 * attended / meeting duration), capped to 0-100.",
        examples=[92],
    )
    status: AttendanceStatus = Field(..., examples=["Present"])
    threshold: float = Field(..., examples=[85.0])
    session_count: int = Field(..., examples=[2])
    is_active: bool = Field(
        False,
        description="True while any session of the identity is still open.",
    )
    duration_source: DurationSource = DurationSource.MEETING
    low_confidence: bool = Field(
        False,
        description=(
            "True when the meeting duration had to fall back to the participant's "
            "own total time, or when any session timestamp was substituted."
        ),
    )


class MeetingSummary(BaseModel):
    """
    Per-meeting statistics for reporting and dashboard layers.
    """

    meeting_id: str
    meeting_uuid: str
    topic: str | None = None
    status: str
    attendance_calculated: bool
    meeting_duration_minutes: float | None = Field(
        None,
        description="Duration used as the verdict denominator (None when nothing is known yet).",
    )
    total_participants: int
    present_count: int
    absent_count: int
    in_progress_count: int
    attendance_rate: float = Field(
        ...,
        description="Present participants / total participants * 100, rounded to 2 decimals.",
    )
    average_attendance_percentage: float
    total_sessions: int
    reconciled_sessions: int
    sessions_by_source: dict[str, int]
    threshold: float
    verdicts: list[AttendanceVerdict]
