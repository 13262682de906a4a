# app/services/session_aggregator.py
from __future__ import annotations

import logging
import math
from collections import OrderedDict
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from app.core.clock import Clock, system_clock
from app.models.participant_session import ParticipantSession
from app.schemas.attendance import AttendanceStatus, AttendanceVerdict, DurationSource

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 85.0


class SessionAggregator:
    """
    Turns the sessions of one identity into an `AttendanceVerdict`.

    Rules
    -----
    1) attended = sum of session durations; an open session counts
       `now - join_time`.
    2) Meeting duration, first available of:
       - the duration passed in by the caller (actual or scheduled)
       - latest leave - earliest join across *all* participants, min 1 minute
       - the participant's own attended time (low confidence)
    3) percentage = round(100 * attended / (duration * 60)), capped to 0-100.
    4) status:
       - any open session            => In Progress
       - nothing attended            => Absent
       - unrounded pct >= threshold  => Present
       - otherwise                   => Absent

    The threshold comparison uses the unrounded ratio so that 50m59s of a
    60 minute meeting (84.97%) stays Absent even though it rounds to 85.
    """

    def __init__(self, threshold: float = DEFAULT_THRESHOLD, clock: Clock = system_clock) -> None:
        self.threshold = float(threshold)
        self.clock = clock

    def aggregate(
        self,
        sessions: Sequence[ParticipantSession],
        meeting_duration_minutes: Optional[float] = None,
        *,
        meeting_sessions: Optional[Sequence[ParticipantSession]] = None,
        now: Optional[datetime] = None,
    ) -> AttendanceVerdict:
        now = now or self.clock.now()

        total_seconds = sum(self.session_seconds(s, now) for s in sessions)
        is_active = any(s.leave_time is None for s in sessions)
        low_confidence = any(bool(s.timestamp_substituted) for s in sessions)

        duration_minutes, source = self._resolve_duration(
            meeting_duration_minutes,
            meeting_sessions if meeting_sessions is not None else sessions,
            total_seconds,
        )
        if source == DurationSource.SELF:
            low_confidence = True

        if duration_minutes > 0:
            raw_pct = 100.0 * total_seconds / (duration_minutes * 60.0)
        else:
            raw_pct = 0.0

        percentage = min(100, max(0, int(math.floor(raw_pct + 0.5))))

        if is_active:
            status = AttendanceStatus.IN_PROGRESS
        elif total_seconds <= 0:
            status = AttendanceStatus.ABSENT
        elif raw_pct + 1e-9 >= self.threshold:
            status = AttendanceStatus.PRESENT
        else:
            status = AttendanceStatus.ABSENT

        name, email, identity = self._identity_fields(sessions)

        return AttendanceVerdict(
            participant_uuid=identity,
            participant_name=name,
            participant_email=email,
            total_attended_seconds=int(total_seconds),
            meeting_duration_minutes=round(duration_minutes, 2),
            attendance_percentage=percentage,
            status=status,
            threshold=self.threshold,
            session_count=len(sessions),
            is_active=is_active,
            duration_source=source,
            low_confidence=low_confidence,
        )

    def aggregate_meeting(
        self,
        sessions: Sequence[ParticipantSession],
        meeting_duration_minutes: Optional[float] = None,
        *,
        now: Optional[datetime] = None,
    ) -> "OrderedDict[str, AttendanceVerdict]":
        """
        Verdicts for every distinct identity (participant_uuid) of a meeting,
        in order of first join.
        """
        now = now or self.clock.now()
        grouped: "OrderedDict[str, List[ParticipantSession]]" = OrderedDict()
        for session in sorted(sessions, key=lambda s: s.join_time):
            grouped.setdefault(session.participant_uuid, []).append(session)

        return OrderedDict(
            (
                identity,
                self.aggregate(
                    group,
                    meeting_duration_minutes,
                    meeting_sessions=sessions,
                    now=now,
                ),
            )
            for identity, group in grouped.items()
        )

    @staticmethod
    def session_seconds(session: ParticipantSession, now: datetime) -> int:
        """
        Seconds attended in one session.
        """
        if session.leave_time is None:
            return max(int((now - session.join_time).total_seconds()), 0)
        if session.duration_seconds is not None:
            return max(int(session.duration_seconds), 0)
        return max(int((session.leave_time - session.join_time).total_seconds()), 0)

    @staticmethod
    def derive_meeting_duration_minutes(sessions: Iterable[ParticipantSession]) -> Optional[float]:
        """
        latest leave - earliest join across all sessions, at least 1 minute.

        Returns None if there is no join or no leave timestamp at all.
        """
        join_times: List[datetime] = []
        leave_times: List[datetime] = []
        for s in sessions:
            if s.join_time is not None:
                join_times.append(s.join_time)
            if s.leave_time is not None:
                leave_times.append(s.leave_time)

        if not join_times or not leave_times:
            return None

        delta = (max(leave_times) - min(join_times)).total_seconds()
        return max(delta / 60.0, 1.0)

    def _resolve_duration(
        self,
        meeting_duration_minutes: Optional[float],
        meeting_sessions: Sequence[ParticipantSession],
        total_seconds: int,
    ) -> tuple[float, DurationSource]:
        if meeting_duration_minutes is not None and meeting_duration_minutes > 0:
            return float(meeting_duration_minutes), DurationSource.MEETING

        derived = self.derive_meeting_duration_minutes(meeting_sessions)
        if derived is not None:
            return float(derived), DurationSource.PARTICIPANT_SPAN

        if total_seconds > 0:
            logger.warning(
                "No meeting duration available; falling back to the participant's own time (%ss)",
                total_seconds,
            )
            return total_seconds / 60.0, DurationSource.SELF

        return 0.0, DurationSource.NONE

    @staticmethod
    def _identity_fields(
        sessions: Sequence[ParticipantSession],
    ) -> tuple[Optional[str], Optional[str], Optional[str]]:
        name = email = identity = None
        for s in sorted(sessions, key=lambda s: s.join_time):
            identity = identity or s.participant_uuid
            name = s.participant_name or name
            email = s.participant_email or email
        return name, email, identity
