from enum import Enum


class MeetingStatus(str, Enum):
    """
    Lifecycle of a meeting record. Transitions only move forward and
    ENDED is terminal.
    """

    WAITING = "waiting"
    STARTED = "started"
    ENDED = "ended"

    @property
    def rank(self) -> int:
        return _MEETING_STATUS_ORDER.index(self)


_MEETING_STATUS_ORDER = [MeetingStatus.WAITING, MeetingStatus.STARTED, MeetingStatus.ENDED]


class ConnectionStatus(str, Enum):
    JOINED = "joined"
    IN_MEETING = "in_meeting"
    LEFT = "left"


class SessionSource(str, Enum):
    """
    Provenance of a participant session.
    """

    EVENT_STREAM = "event_stream"
    API_RECONCILE = "api_reconcile"
    MANUAL = "manual"
