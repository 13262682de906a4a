# tests/test_notifications.py
import pytest

from app.services.notifications import NotificationChannel, NotificationKind
from tests.factories import T0


def test_emit_stamps_time_and_payload(clock):
    channel = NotificationChannel(maxsize=10, clock=clock)

    notification = channel.emit(NotificationKind.PARTICIPANT_JOINED, "m1", participant_uuid="p1")

    assert notification.emitted_at == T0
    assert notification.payload == {"participant_uuid": "p1"}
    assert len(channel) == 1


def test_full_channel_drops_oldest(clock):
    channel = NotificationChannel(maxsize=2, clock=clock)

    channel.emit(NotificationKind.PARTICIPANT_JOINED, "m1")
    channel.emit(NotificationKind.PARTICIPANT_LEFT, "m2")
    channel.emit(NotificationKind.ATTENDANCE_CALCULATED, "m3")

    drained = channel.drain()
    assert [n.meeting_id for n in drained] == ["m2", "m3"]
    assert channel.dropped == 1
    assert len(channel) == 0


@pytest.mark.asyncio
async def test_consumer_receives_in_emission_order(clock):
    channel = NotificationChannel(maxsize=10, clock=clock)
    channel.emit(NotificationKind.RECONCILIATION_FAILED, "m1", error="boom")
    channel.emit(NotificationKind.ATTENDANCE_CALCULATED, "m1")

    first = await channel.get()
    second = await channel.get()

    assert first.kind == NotificationKind.RECONCILIATION_FAILED
    assert second.kind == NotificationKind.ATTENDANCE_CALCULATED
