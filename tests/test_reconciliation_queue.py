# tests/test_reconciliation_queue.py
import pytest

from app.services.reconciliation_queue import (
    enqueue_reconciliation,
    exhaust_if_spent,
    get_queue_item,
    list_queue,
    remove_from_queue,
)
from tests.factories import at


@pytest.mark.asyncio
async def test_enqueue_upserts_and_counts_attempts(db):
    await enqueue_reconciliation(db, "u1", now=at(0), meeting_id="m1", error="timeout")
    item = await enqueue_reconciliation(db, "u1", now=at(5), error="429")

    assert item.attempts == 2
    assert item.queued_at == at(0)
    assert item.last_attempt_at == at(5)
    assert item.last_error == "429"
    assert item.meeting_id == "m1"
    assert len(await list_queue(db)) == 1


@pytest.mark.asyncio
async def test_occurrences_of_one_meeting_are_queued_separately(db):
    await enqueue_reconciliation(db, "occ-1", now=at(0), meeting_id="m1", error="timeout")
    await enqueue_reconciliation(db, "occ-2", now=at(1), meeting_id="m1", count_attempt=False)

    items = await list_queue(db)

    assert [(i.meeting_uuid, i.meeting_id, i.attempts) for i in items] == [("occ-1", "m1", 1), ("occ-2", "m1", 0)]
    assert await remove_from_queue(db, "occ-2") is True
    assert (await get_queue_item(db, "occ-1")).last_error == "timeout"


@pytest.mark.asyncio
async def test_scheduling_without_attempt_keeps_counter(db):
    item = await enqueue_reconciliation(db, "u1", now=at(0), count_attempt=False)
    assert item.attempts == 0
    assert item.last_attempt_at is None


@pytest.mark.asyncio
async def test_list_orders_by_priority_then_age(db):
    await enqueue_reconciliation(db, "old-normal", now=at(0))
    await enqueue_reconciliation(db, "new-urgent", now=at(10), priority=1)
    await enqueue_reconciliation(db, "new-normal", now=at(20))

    assert [i.meeting_uuid for i in await list_queue(db)] == ["new-urgent", "old-normal", "new-normal"]


@pytest.mark.asyncio
async def test_lower_priority_number_wins_on_upsert(db):
    await enqueue_reconciliation(db, "u1", now=at(0), priority=5)
    item = await enqueue_reconciliation(db, "u1", now=at(1), priority=2)
    assert item.priority == 2


@pytest.mark.asyncio
async def test_exhausted_items_stay_visible(db):
    await enqueue_reconciliation(db, "u1", now=at(0))
    assert await exhaust_if_spent(db, "u1", max_attempts=2) is None

    await enqueue_reconciliation(db, "u1", now=at(1))
    item = await exhaust_if_spent(db, "u1", max_attempts=2)

    assert item is not None and item.exhausted is True
    assert await list_queue(db, include_exhausted=False) == []
    assert [i.meeting_uuid for i in await list_queue(db)] == ["u1"]
    assert await exhaust_if_spent(db, "u1", max_attempts=2) is None


@pytest.mark.asyncio
async def test_remove_from_queue(db):
    await enqueue_reconciliation(db, "u1", now=at(0))

    assert await remove_from_queue(db, "u1") is True
    assert await remove_from_queue(db, "u1") is False
    assert await get_queue_item(db, "u1") is None
