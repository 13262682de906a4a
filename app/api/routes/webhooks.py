# app/api/routes/webhooks.py
import logging
from http import HTTPStatus
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.runtime import get_attendance_runtime
from app.db.session import get_db
from app.schemas.events import IngestResult
from app.services.runtime import AttendanceRuntime

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/webhooks",
    tags=["Webhooks"],
)


@router.post(
    "/zoom",
    response_model=IngestResult,
    status_code=HTTPStatus.ACCEPTED,
    summary="Ingest a Zoom meeting lifecycle event",
    description=(
        "Accepts `meeting.started`, `meeting.ended`, `meeting.participant_joined` and "
        "`meeting.participant_left` webhook deliveries (or the flattened event shape).\n\n"
        "- Redeliveries are acknowledged as `duplicate` and change nothing.\n"
        "- Malformed events are acknowledged with `accepted=false` so the sender "
        "does not keep retrying them.\n"
        "- A failure while storing the event answers 503 and leaves it unrecorded, so a "
        "redelivery is processed normally.\n"
        "- `meeting.ended` schedules reconciliation in the background; the response "
        "never waits for it.\n\n"
        "Signature verification is expected to happen in front of this service."
    ),
    responses={
        202: {
            "description": "Event processed (or rejected as malformed).",
            "content": {
                "application/json": {
                    "example": {
                        "accepted": True,
                        "effect": "session_opened",
                        "idempotency_key": "participant_joined:85746065432:16778240:1736500000000",
                        "meeting_id": "85746065432",
                        "participant_uuid": "16778240",
                        "session_id": 12,
                        "sessions_closed": 0,
                        "timestamp_substituted": False,
                        "detail": None,
                    }
                }
            },
        },
        503: {"description": "Event could not be stored; the sender should redeliver it."},
    },
)
async def receive_zoom_event(
    payload: Any = Body(..., description="Webhook envelope or flattened lifecycle event."),
    db: AsyncSession = Depends(get_db),
    runtime: AttendanceRuntime = Depends(get_attendance_runtime),
) -> IngestResult:
    try:
        return await runtime.ingestor.ingest(db, payload)
    except Exception:
        logger.exception("Failed to ingest Zoom event")
        raise HTTPException(
            status_code=HTTPStatus.SERVICE_UNAVAILABLE,
            detail="Event could not be stored; retry delivery.",
        )
