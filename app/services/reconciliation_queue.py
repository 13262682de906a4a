# app/services/reconciliation_queue.py
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.reconciliation_queue_item import ReconciliationQueueItem

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 5


async def enqueue_reconciliation(
    db: AsyncSession,
    meeting_uuid: str,
    *,
    now: datetime,
    meeting_id: str | None = None,
    error: str | None = None,
    priority: int = DEFAULT_PRIORITY,
    count_attempt: bool = True,
) -> ReconciliationQueueItem:
    """
    Upsert the queue item for the occurrence `meeting_uuid`.

    - A new item starts with `attempts = 1` when it records a failed attempt,
      0 when it is only scheduled (`count_attempt=False`).
    - An existing item keeps its original `queued_at`; attempts are
      incremented and the latest error replaces the previous one.
    - The lower of the old and new priority wins.
    """
    item = await get_queue_item(db, meeting_uuid)

    if item is None:
        item = ReconciliationQueueItem(
            meeting_uuid=meeting_uuid,
            meeting_id=meeting_id,
            queued_at=now,
            attempts=0,
            priority=priority,
            exhausted=False,
        )
        db.add(item)
    else:
        item.priority = min(item.priority, priority)
        if meeting_id:
            item.meeting_id = meeting_id

    if count_attempt:
        item.attempts = (item.attempts or 0) + 1
        item.last_attempt_at = now
    if error is not None:
        item.last_error = error

    await db.commit()
    logger.info(
        "Queued reconciliation for meeting %s / %s (attempts=%s, priority=%s)",
        item.meeting_id,
        meeting_uuid,
        item.attempts,
        item.priority,
    )
    return item


async def remove_from_queue(db: AsyncSession, meeting_uuid: str) -> bool:
    """
    Remove the queue item after a successful reconciliation.

    Returns True if an item was removed.
    """
    result = await db.execute(
        delete(ReconciliationQueueItem).where(ReconciliationQueueItem.meeting_uuid == meeting_uuid)
    )
    await db.commit()
    removed = bool(result.rowcount)
    if removed:
        logger.info("Removed occurrence %s from the reconciliation queue", meeting_uuid)
    return removed


async def get_queue_item(db: AsyncSession, meeting_uuid: str) -> ReconciliationQueueItem | None:
    result = await db.execute(
        select(ReconciliationQueueItem).where(ReconciliationQueueItem.meeting_uuid == meeting_uuid)
    )
    return result.scalar_one_or_none()


async def list_queue(
    db: AsyncSession,
    *,
    include_exhausted: bool = True,
) -> list[ReconciliationQueueItem]:
    """
    Queue items in drain order: priority (lower first), then age.
    """
    stmt = select(ReconciliationQueueItem)
    if not include_exhausted:
        stmt = stmt.where(ReconciliationQueueItem.exhausted.is_(False))
    stmt = stmt.order_by(
        ReconciliationQueueItem.priority.asc(),
        ReconciliationQueueItem.queued_at.asc(),
        ReconciliationQueueItem.id.asc(),
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def mark_exhausted(db: AsyncSession, meeting_uuid: str) -> ReconciliationQueueItem | None:
    item = await get_queue_item(db, meeting_uuid)
    if item is None:
        return None
    item.exhausted = True
    await db.commit()
    logger.error(
        "Reconciliation for meeting %s / %s exhausted after %s attempts: %s",
        item.meeting_id,
        meeting_uuid,
        item.attempts,
        item.last_error,
    )
    return item


async def exhaust_if_spent(
    db: AsyncSession,
    meeting_uuid: str,
    max_attempts: int,
) -> ReconciliationQueueItem | None:
    """
    Mark the item exhausted once it has used `max_attempts` attempts.

    Returns the item only when it was exhausted by this call.
    """
    item = await get_queue_item(db, meeting_uuid)
    if item is None or item.exhausted or item.attempts < max_attempts:
        return None
    return await mark_exhausted(db, meeting_uuid)
