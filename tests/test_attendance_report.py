# tests/test_attendance_report.py
import pytest

from app.schemas.attendance import AttendanceStatus, DurationSource
from app.schemas.meeting import MeetingStatus
from app.services.attendance_report import get_meeting_summary, get_verdict
from app.services.meeting_lookup import IdentityNotFound, MeetingNotFound
from app.services.session_aggregator import SessionAggregator
from tests.factories import MEETING_ID, MEETING_UUID, at, seed_meeting, seed_session


@pytest.fixture
def aggregator(clock):
    return SessionAggregator(threshold=85.0, clock=clock)


async def _seed_live_meeting(session_factory):
    """
    Alice reconnected once (55 min), Bob stayed 40 min, Carol is still in.
    """
    await seed_meeting(session_factory, status=MeetingStatus.STARTED)
    await seed_session(session_factory, "p-a", at(0), at(30), name="Alice", email="alice@example.com", participant_id="1")
    await seed_session(session_factory, "p-a", at(35), at(60), name="Alice", email="alice@example.com", participant_id="1")
    await seed_session(session_factory, "p-b", at(10), at(50), name="Bob", zoom_user_id="Z-BOB")
    await seed_session(session_factory, "p-c", at(20), name="Carol")


@pytest.mark.asyncio
async def test_verdict_resolves_identity_by_email_case_insensitively(db, session_factory, aggregator):
    await _seed_live_meeting(session_factory)

    verdict = await get_verdict(db, MEETING_ID, "ALICE@example.com", aggregator, now=at(50))

    assert verdict.participant_uuid == "p-a"
    assert verdict.session_count == 2
    assert verdict.total_attended_seconds == 55 * 60
    assert verdict.attendance_percentage == 92
    assert verdict.status == AttendanceStatus.PRESENT


@pytest.mark.asyncio
@pytest.mark.parametrize("identity", ["p-b", "Z-BOB", "bob"])
async def test_verdict_resolves_uuid_user_id_and_name(db, session_factory, aggregator, identity):
    await _seed_live_meeting(session_factory)

    verdict = await get_verdict(db, MEETING_ID, identity, aggregator, now=at(50))

    assert verdict.participant_uuid == "p-b"
    assert verdict.attendance_percentage == 67
    assert verdict.status == AttendanceStatus.ABSENT


@pytest.mark.asyncio
async def test_open_session_counts_up_to_now(db, session_factory, aggregator):
    await _seed_live_meeting(session_factory)

    verdict = await get_verdict(db, MEETING_UUID, "p-c", aggregator, now=at(50))

    assert verdict.is_active is True
    assert verdict.status == AttendanceStatus.IN_PROGRESS
    assert verdict.total_attended_seconds == 30 * 60
    assert verdict.attendance_percentage == 50


@pytest.mark.asyncio
async def test_unknown_identity_and_meeting_raise(db, session_factory, aggregator):
    await _seed_live_meeting(session_factory)

    with pytest.raises(IdentityNotFound):
        await get_verdict(db, MEETING_ID, "nobody@example.com", aggregator)

    with pytest.raises(MeetingNotFound):
        await get_verdict(db, "123", "p-a", aggregator)

    with pytest.raises(MeetingNotFound):
        await get_meeting_summary(db, "123", aggregator)


@pytest.mark.asyncio
async def test_summary_counts_and_rates(db, session_factory, aggregator):
    await _seed_live_meeting(session_factory)

    summary = await get_meeting_summary(db, MEETING_ID, aggregator, now=at(50))

    assert summary.meeting_uuid == MEETING_UUID
    assert summary.status == MeetingStatus.STARTED.value
    assert summary.attendance_calculated is False
    assert summary.meeting_duration_minutes == 60
    assert (summary.total_participants, summary.present_count, summary.absent_count, summary.in_progress_count) == (
        3,
        1,
        1,
        1,
    )
    assert summary.attendance_rate == 33.33
    assert summary.average_attendance_percentage == 69.67
    assert summary.total_sessions == 4
    assert summary.reconciled_sessions == 0
    assert summary.sessions_by_source == {"event_stream": 4}
    assert [v.participant_uuid for v in summary.verdicts] == ["p-a", "p-b", "p-c"]


@pytest.mark.asyncio
async def test_summary_of_empty_meeting(db, session_factory, aggregator):
    await seed_meeting(session_factory, status=MeetingStatus.WAITING, start=None)

    summary = await get_meeting_summary(db, MEETING_ID, aggregator)

    assert summary.total_participants == 0
    assert summary.attendance_rate == 0.0
    assert summary.average_attendance_percentage == 0.0
    assert summary.meeting_duration_minutes == 60
    assert summary.verdicts == []


@pytest.mark.asyncio
async def test_summary_derives_duration_from_participant_span(db, session_factory, aggregator):
    await seed_meeting(session_factory, start=None, scheduled=None)
    await seed_session(session_factory, "p-a", at(0), at(30))
    await seed_session(session_factory, "p-b", at(10), at(40))

    summary = await get_meeting_summary(db, MEETING_ID, aggregator)

    assert summary.meeting_duration_minutes == 40
    assert {v.duration_source for v in summary.verdicts} == {DurationSource.PARTICIPANT_SPAN}
    assert [v.attendance_percentage for v in summary.verdicts] == [75, 75]


@pytest.mark.asyncio
async def test_seconds_of_meeting_duration_count_toward_the_denominator(db, session_factory, aggregator):
    """
    60m29s meeting, 51m20s attended: 84.9% of the real duration, although it
    would clear 85% against a duration rounded to 60 minutes.
    """
    await seed_meeting(session_factory, end=at(60, 29))
    await seed_session(session_factory, "p-a", at(0), at(51, 20), name="Alice")

    verdict = await get_verdict(db, MEETING_ID, "p-a", aggregator)
    summary = await get_meeting_summary(db, MEETING_ID, aggregator)

    assert verdict.status == AttendanceStatus.ABSENT
    assert verdict.attendance_percentage == 85
    assert verdict.meeting_duration_minutes == 60.48
    assert summary.meeting_duration_minutes == 60.48
