# tests/test_reconciliation_engine.py
import asyncio

import pytest

from app.schemas.attendance import AttendanceStatus
from app.schemas.meeting import MeetingStatus, SessionSource
from app.services.meeting_lookup import MeetingNotFound, get_meeting, list_meeting_sessions
from app.services.notifications import NotificationChannel, NotificationKind
from app.services.reconciliation import (
    ConcurrentReconciliation,
    ReconciliationDispatcher,
    ReconciliationEngine,
)
from app.services.reconciliation_queue import enqueue_reconciliation, get_queue_item, list_queue
from app.services.session_aggregator import SessionAggregator
from app.services.zoom_gateway import RateLimitExceeded, UpstreamUnavailable, encode_meeting_uuid
from tests.factories import MEETING_ID, MEETING_UUID, at, report_row, seed_meeting, seed_session

ENCODED_UUID = encode_meeting_uuid(MEETING_UUID)


@pytest.fixture
def notifier(clock):
    return NotificationChannel(maxsize=100, clock=clock)


@pytest.fixture
def engine(session_factory, fake_gateway, clock, notifier):
    return ReconciliationEngine(
        session_factory,
        fake_gateway,
        SessionAggregator(threshold=85.0, clock=clock),
        notifier=notifier,
        clock=clock,
        max_attempts=3,
    )


async def _sessions(session_factory, meeting_uuid=MEETING_UUID):
    async with session_factory() as db:
        return await list_meeting_sessions(db, meeting_uuid)


async def _meeting(session_factory, meeting_id=MEETING_ID):
    async with session_factory() as db:
        return await get_meeting(db, meeting_id)


@pytest.mark.asyncio
async def test_email_match_wins_over_name_substring(engine, fake_gateway, session_factory):
    """
    The entry matches the room session by email and the laptop session by
    name substring; the earlier strategy (email) decides.
    """
    await seed_meeting(session_factory, end=at(60))
    await seed_session(session_factory, "p-room", at(1), at(50), name="Conference Room", email="alice@example.com")
    await seed_session(session_factory, "p-laptop", at(2), at(30), name="Alice Smith (Laptop)")
    fake_gateway.report(
        ENCODED_UUID,
        {"participants": [report_row(name="Alice Smith", email="ALICE@example.com", join=at(0), leave=at(55))]},
    )

    result = await engine.reconcile(MEETING_ID)

    assert result.success is True
    assert (result.matched, result.created, result.updated) == (1, 0, 1)

    by_uuid = {s.participant_uuid: s for s in await _sessions(session_factory)}
    room = by_uuid["p-room"]
    assert room.is_reconciled is True
    assert room.source == SessionSource.API_RECONCILE.value
    assert (room.join_time, room.leave_time, room.duration_seconds) == (at(0), at(55), 55 * 60)
    assert room.participant_name == "Conference Room"

    laptop = by_uuid["p-laptop"]
    assert laptop.is_reconciled is False
    assert laptop.source == SessionSource.EVENT_STREAM.value


@pytest.mark.asyncio
async def test_participant_missing_from_events_is_created(engine, fake_gateway, session_factory, notifier):
    await seed_meeting(session_factory, end=at(60))
    await seed_session(session_factory, "p-alice", at(0), at(55), participant_id="101", name="Alice")
    fake_gateway.report(
        ENCODED_UUID,
        {
            "participants": [
                report_row(id="101", name="Alice", join=at(0), leave=at(55)),
                report_row(id="404", name="Dave", join=at(2), leave=at(58)),
            ]
        },
    )

    result = await engine.reconcile(MEETING_ID)

    assert (result.matched, result.created) == (1, 1)
    assert result.verdicts_written == 2

    sessions = {s.participant_uuid: s for s in await _sessions(session_factory)}
    dave = sessions[f"api_{MEETING_UUID}_404"]
    assert dave.is_reconciled is True
    assert dave.source == SessionSource.API_RECONCILE.value
    assert dave.participant_name == "Dave"
    assert dave.attendance_percentage == 93
    assert dave.attendance_status == AttendanceStatus.PRESENT.value
    assert sessions["p-alice"].attendance_percentage == 92

    meeting = await _meeting(session_factory)
    assert meeting.attendance_calculated is True
    assert meeting.attendance_calculated_at is not None

    kinds = [n.kind for n in notifier.drain()]
    assert kinds == [NotificationKind.ATTENDANCE_CALCULATED]


@pytest.mark.asyncio
async def test_reconnection_rows_pair_with_closest_sessions(engine, fake_gateway, session_factory):
    await seed_meeting(session_factory, end=at(60))
    await seed_session(session_factory, "p-bob", at(10), at(40), participant_id="7", name="Bob")
    await seed_session(session_factory, "p-bob", at(45), at(58), participant_id="7", name="Bob")
    fake_gateway.report(
        ENCODED_UUID,
        {
            "participants": [
                report_row(id="7", name="Bob", join=at(45), leave=at(59)),
                report_row(id="7", name="Bob", join=at(10), leave=at(41)),
            ]
        },
    )

    result = await engine.reconcile(MEETING_ID)

    assert (result.matched, result.created) == (2, 0)
    sessions = await _sessions(session_factory)
    assert [(s.join_time, s.leave_time) for s in sessions] == [(at(10), at(41)), (at(45), at(59))]
    assert all(s.participant_uuid == "p-bob" for s in sessions)
    assert {s.attendance_percentage for s in sessions} == {75}


@pytest.mark.asyncio
async def test_unknown_reconnection_rows_share_one_identity(engine, fake_gateway, session_factory):
    await seed_meeting(session_factory, end=at(60))
    fake_gateway.report(
        ENCODED_UUID,
        {
            "participants": [
                report_row(id="55", name="Eve", join=at(0), leave=at(20)),
                report_row(id="55", name="Eve", join=at(25), leave=at(50)),
            ]
        },
    )

    result = await engine.reconcile(MEETING_ID)

    assert result.created == 2
    assert result.verdicts_written == 1
    sessions = await _sessions(session_factory)
    assert {s.participant_uuid for s in sessions} == {f"api_{MEETING_UUID}_55"}
    assert {s.attendance_status for s in sessions} == {AttendanceStatus.ABSENT.value}


@pytest.mark.asyncio
async def test_join_proximity_is_the_last_resort(engine, fake_gateway, session_factory):
    await seed_meeting(session_factory, end=at(60))
    await seed_session(session_factory, "p-phone", at(3), at(50), name="iPhone")
    fake_gateway.report(
        ENCODED_UUID,
        {"participants": [report_row(id="9", name="Grace Hopper", join=at(0), leave=at(52))]},
    )

    result = await engine.reconcile(MEETING_ID)

    assert (result.matched, result.created) == (1, 0)
    phone = (await _sessions(session_factory))[0]
    assert phone.participant_uuid == "p-phone"
    assert phone.leave_time == at(52)


@pytest.mark.asyncio
async def test_already_reconciled_meeting_is_skipped_unless_forced(engine, fake_gateway, session_factory):
    await seed_meeting(session_factory, end=at(60), attendance_calculated=True)

    skipped = await engine.reconcile(MEETING_ID)

    assert skipped.success is True
    assert skipped.already_reconciled is True
    assert fake_gateway.calls == []

    forced = await engine.reconcile(MEETING_ID, force=True)

    assert forced.already_reconciled is False
    assert forced.report_missing is True
    assert len(fake_gateway.calls) == 1


@pytest.mark.asyncio
async def test_second_concurrent_reconcile_is_rejected(engine, fake_gateway, session_factory):
    await seed_meeting(session_factory, end=at(60))
    fake_gateway.report(ENCODED_UUID, {"participants": []})
    fake_gateway.gate = asyncio.Event()

    first = asyncio.create_task(engine.reconcile(MEETING_ID))
    for _ in range(200):
        if fake_gateway.calls:
            break
        await asyncio.sleep(0.01)
    assert MEETING_UUID in engine.in_flight

    with pytest.raises(ConcurrentReconciliation):
        await engine.reconcile(MEETING_ID)

    fake_gateway.gate.set()
    result = await first

    assert result.success is True
    assert len(fake_gateway.calls) == 1
    assert engine.stats["runs"] == 1
    assert engine.in_flight == frozenset()


@pytest.mark.asyncio
async def test_meeting_id_and_uuid_share_one_exclusive_run(engine, fake_gateway, session_factory):
    await seed_meeting(session_factory, end=at(60))
    fake_gateway.report(
        ENCODED_UUID,
        {"participants": [report_row(id="x1", name="Xena", join=at(0), leave=at(60))]},
    )
    fake_gateway.gate = asyncio.Event()

    by_id = asyncio.create_task(engine.reconcile(MEETING_ID))
    for _ in range(200):
        if fake_gateway.calls:
            break
        await asyncio.sleep(0.01)

    with pytest.raises(ConcurrentReconciliation):
        await engine.reconcile(MEETING_UUID)

    fake_gateway.gate.set()
    result = await by_id

    assert result.created == 1
    assert engine.stats["runs"] == 1
    sessions = await _sessions(session_factory)
    assert [s.participant_uuid for s in sessions] == [f"api_{MEETING_UUID}_x1"]


@pytest.mark.asyncio
async def test_drain_retries_the_queued_occurrence_not_the_latest(engine, fake_gateway, session_factory):
    await seed_meeting(session_factory, meeting_uuid="occ-1", end=at(60))
    fake_gateway.error = UpstreamUnavailable("down")
    failed = await engine.reconcile("occ-1")
    assert failed.queued_for_retry is True

    # The next occurrence of the same recurring meeting starts afterwards.
    await seed_meeting(session_factory, meeting_uuid="occ-2", start=at(24 * 60), end=None)
    fake_gateway.error = None
    fake_gateway.report("occ-1", {"participants": []})

    summary = await engine.drain_queue()

    assert (summary.processed, summary.succeeded) == (1, 1)
    assert summary.results[0].meeting_uuid == "occ-1"
    assert [c["path"] for c in fake_gateway.calls[1:]] == ["/report/meetings/occ-1/participants"]
    assert (await _meeting(session_factory, "occ-1")).attendance_calculated is True
    assert (await _meeting(session_factory, "occ-2")).attendance_calculated is False
    async with session_factory() as db:
        assert await list_queue(db) == []


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [UpstreamUnavailable("timed out"), RateLimitExceeded("429", status_code=429)])
async def test_upstream_failure_queues_retry_without_marking(engine, fake_gateway, session_factory, notifier, error):
    await seed_meeting(session_factory, end=at(60))
    await seed_session(session_factory, "p-alice", at(0), at(55))
    fake_gateway.error = error

    result = await engine.reconcile(MEETING_ID)

    assert result.success is False
    assert result.queued_for_retry is True
    assert result.errors[0].type == type(error).__name__

    meeting = await _meeting(session_factory)
    assert meeting.attendance_calculated is False
    assert type(error).__name__ in meeting.reconciliation_error

    async with session_factory() as db:
        item = await get_queue_item(db, MEETING_UUID)
    assert item.attempts == 1
    assert item.meeting_id == MEETING_ID

    sessions = await _sessions(session_factory)
    assert sessions[0].attendance_status is None

    failed = [n for n in notifier.drain() if n.kind == NotificationKind.RECONCILIATION_FAILED]
    assert failed and failed[0].payload["exhausted"] is False


@pytest.mark.asyncio
async def test_missing_report_falls_back_to_event_data(engine, session_factory):
    await seed_meeting(session_factory, end=at(60))
    await seed_session(session_factory, "p-alice", at(0), at(55))

    result = await engine.reconcile(MEETING_ID)

    assert result.success is True
    assert result.report_missing is True
    session = (await _sessions(session_factory))[0]
    assert session.is_reconciled is False
    assert session.attendance_status == AttendanceStatus.PRESENT.value
    assert (await _meeting(session_factory)).attendance_calculated is True


@pytest.mark.asyncio
async def test_open_sessions_keep_meeting_unmarked(engine, session_factory, clock):
    await seed_meeting(session_factory, status=MeetingStatus.STARTED)
    await seed_session(session_factory, "p-alice", at(0))
    clock.set_now(at(30))

    result = await engine.reconcile(MEETING_ID)

    assert result.success is True
    assert (await _meeting(session_factory)).attendance_calculated is False
    session = (await _sessions(session_factory))[0]
    assert session.attendance_status == AttendanceStatus.IN_PROGRESS.value


@pytest.mark.asyncio
async def test_report_is_fetched_page_by_page(engine, fake_gateway, session_factory):
    await seed_meeting(session_factory, end=at(60))
    fake_gateway.report(
        ENCODED_UUID,
        {"participants": [report_row(id="1", name="A", join=at(0), leave=at(60))], "next_page_token": "tok"},
        {"participants": [report_row(id="2", name="B", join=at(30), leave=at(60))], "next_page_token": ""},
    )

    result = await engine.reconcile(MEETING_ID)

    assert result.authoritative_participants == 2
    assert [c["params"] for c in fake_gateway.calls] == [
        {"page_size": 300},
        {"page_size": 300, "next_page_token": "tok"},
    ]
    assert {c["category"] for c in fake_gateway.calls} == {"report"}


@pytest.mark.asyncio
async def test_uuid_with_slash_is_double_encoded(engine, fake_gateway, session_factory):
    await seed_meeting(session_factory, meeting_id="999", meeting_uuid="/abc==", end=at(60))
    fake_gateway.report("%252Fabc%253D%253D", {"participants": []})

    result = await engine.reconcile("999")

    assert result.report_missing is False
    assert fake_gateway.calls[0]["path"] == "/report/meetings/%252Fabc%253D%253D/participants"


@pytest.mark.asyncio
async def test_bad_report_rows_are_reported_not_fatal(engine, fake_gateway, session_factory):
    await seed_meeting(session_factory, end=at(60))
    fake_gateway.report(
        ENCODED_UUID,
        {
            "participants": [
                {"id": "x", "user_name": "Broken", "join_time": "not a time"},
                report_row(id="2", name="Fine", join=at(0), leave=at(60)),
            ]
        },
    )

    result = await engine.reconcile(MEETING_ID)

    assert result.success is True
    assert result.created == 1
    assert len(result.errors) == 1
    assert result.errors[0].participant == "Broken"


@pytest.mark.asyncio
async def test_unknown_meeting_raises_not_found(engine):
    with pytest.raises(MeetingNotFound):
        await engine.reconcile("does-not-exist")
    assert engine.in_flight == frozenset()


@pytest.mark.asyncio
async def test_drain_exhausts_after_max_attempts(engine, fake_gateway, session_factory, notifier):
    await seed_meeting(session_factory, end=at(60))
    fake_gateway.error = UpstreamUnavailable("down")
    async with session_factory() as db:
        await enqueue_reconciliation(db, MEETING_UUID, now=at(60), meeting_id=MEETING_ID, count_attempt=False)

    summaries = [await engine.drain_queue() for _ in range(3)]

    assert [s.failed for s in summaries] == [1, 1, 1]
    assert [s.exhausted for s in summaries] == [0, 0, 1]

    async with session_factory() as db:
        items = await list_queue(db)
    assert len(items) == 1
    assert items[0].exhausted is True
    assert items[0].attempts == 3

    exhausted = [n for n in notifier.drain() if n.payload.get("exhausted")]
    assert len(exhausted) == 1

    idle = await engine.drain_queue()
    assert idle.processed == 0


@pytest.mark.asyncio
async def test_drain_removes_successful_items(engine, fake_gateway, session_factory):
    await seed_meeting(session_factory, end=at(60))
    fake_gateway.report(ENCODED_UUID, {"participants": []})
    async with session_factory() as db:
        await enqueue_reconciliation(db, MEETING_UUID, now=at(60), meeting_id=MEETING_ID, error="earlier failure")

    summary = await engine.drain_queue()

    assert (summary.processed, summary.succeeded) == (1, 1)
    async with session_factory() as db:
        assert await list_queue(db) == []


@pytest.mark.asyncio
async def test_drain_marks_unknown_meetings_exhausted(engine, session_factory):
    async with session_factory() as db:
        await enqueue_reconciliation(db, "ghost", now=at(0), count_attempt=False)

    summary = await engine.drain_queue()

    assert summary.exhausted == 1
    async with session_factory() as db:
        item = await get_queue_item(db, "ghost")
    assert item.exhausted is True
    assert "not found" in item.last_error


@pytest.mark.asyncio
async def test_dispatcher_runs_in_background_and_swallows_rejections(engine, session_factory):
    await seed_meeting(session_factory, end=at(60))
    dispatcher = ReconciliationDispatcher(engine)

    dispatcher.trigger(MEETING_ID)
    dispatcher.trigger("unknown-meeting")
    await dispatcher.wait_idle()

    assert dispatcher.pending == 0
    assert (await _meeting(session_factory)).attendance_calculated is True
