# app/api/routes/internal.py
from http import HTTPStatus

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.runtime import get_attendance_runtime
from app.db.session import get_db
from app.schemas.reconciliation import QueueDrainSummary, ReconciliationQueueItemRead
from app.services.reconciliation import drain_reconciliation_queue
from app.services.reconciliation_queue import list_queue
from app.services.runtime import AttendanceRuntime

router = APIRouter(
    prefix="/internal",
    tags=["Internal"],
)


@router.post(
    "/reconciliation-queue/drain",
    response_model=QueueDrainSummary,
    status_code=HTTPStatus.OK,
    summary="Retry every queued reconciliation now",
    description=(
        "Runs the same drain the background scheduler runs periodically.\n\n"
        "**Logic:**\n"
        "- Items are processed by priority (lower first), then by age.\n"
        "- Successful meetings leave the queue.\n"
        "- Failed attempts increment `attempts`; at the configured maximum the "
        "item is marked `exhausted` and stays visible."
    ),
)
async def drain_queue(
    runtime: AttendanceRuntime = Depends(get_attendance_runtime),
) -> QueueDrainSummary:
    return await drain_reconciliation_queue(runtime.engine)


@router.get(
    "/reconciliation-queue",
    response_model=list[ReconciliationQueueItemRead],
    status_code=HTTPStatus.OK,
    summary="List queued reconciliations",
)
async def list_reconciliation_queue(
    include_exhausted: bool = Query(True, description="Include items that ran out of attempts."),
    db: AsyncSession = Depends(get_db),
) -> list[ReconciliationQueueItemRead]:
    items = await list_queue(db, include_exhausted=include_exhausted)
    return [ReconciliationQueueItemRead.model_validate(item) for item in items]
