# app/api/routes/meetings.py
from http import HTTPStatus

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.runtime import get_attendance_runtime
from app.db.session import get_db
from app.schemas.attendance import AttendanceVerdict, MeetingSummary
from app.schemas.reconciliation import ReconciliationResult
from app.services.attendance_report import get_meeting_summary, get_verdict
from app.services.meeting_lookup import IdentityNotFound, MeetingNotFound
from app.services.reconciliation import ConcurrentReconciliation
from app.services.runtime import AttendanceRuntime

router = APIRouter(
    prefix="/meetings",
    tags=["Meetings"],
)


@router.post(
    "/{meeting_id}/reconcile",
    response_model=ReconciliationResult,
    status_code=HTTPStatus.OK,
    summary="Reconcile a meeting against the Zoom participant report",
    description=(
        "Runs reconciliation synchronously and returns its result.\n\n"
        "- Already reconciled meetings return `already_reconciled=true` unless "
        "`force=true`.\n"
        "- Upstream failures are queued for retry and reported with "
        "`success=false, queued_for_retry=true`.\n"
        "- A run already in progress for the same meeting answers 409."
    ),
    responses={
        404: {"description": "Meeting not found."},
        409: {"description": "Reconciliation for this meeting is already running."},
    },
)
async def reconcile_meeting(
    meeting_id: str = Path(..., description="Meeting id or occurrence uuid."),
    force: bool = Query(False, description="Re-run even if attendance was already calculated."),
    runtime: AttendanceRuntime = Depends(get_attendance_runtime),
) -> ReconciliationResult:
    try:
        return await runtime.engine.reconcile(meeting_id, force=force)
    except MeetingNotFound as exc:
        raise HTTPException(status_code=HTTPStatus.NOT_FOUND, detail=str(exc))
    except ConcurrentReconciliation as exc:
        raise HTTPException(status_code=HTTPStatus.CONFLICT, detail=str(exc))


@router.get(
    "/{meeting_id}/summary",
    response_model=MeetingSummary,
    status_code=HTTPStatus.OK,
    summary="Attendance statistics for a meeting",
    description=(
        "Per-participant verdicts plus aggregate counts (present / absent / in "
        "progress, attendance rate, average percentage, sessions by source). "
        "Verdicts are recomputed from the stored sessions on every call."
    ),
    responses={404: {"description": "Meeting not found."}},
)
async def meeting_summary(
    meeting_id: str = Path(..., description="Meeting id or occurrence uuid."),
    db: AsyncSession = Depends(get_db),
    runtime: AttendanceRuntime = Depends(get_attendance_runtime),
) -> MeetingSummary:
    try:
        return await get_meeting_summary(db, meeting_id, runtime.aggregator)
    except MeetingNotFound as exc:
        raise HTTPException(status_code=HTTPStatus.NOT_FOUND, detail=str(exc))


@router.get(
    "/{meeting_id}/attendance/{identity}",
    response_model=AttendanceVerdict,
    status_code=HTTPStatus.OK,
    summary="Attendance verdict for one participant",
    description=(
        "`identity` may be the participant uuid, the participant or user id, "
        "the email address or the display name (case-insensitive)."
    ),
    responses={404: {"description": "Meeting or participant not found."}},
)
async def participant_attendance(
    meeting_id: str = Path(..., description="Meeting id or occurrence uuid."),
    identity: str = Path(..., description="Participant uuid, id, email or name."),
    db: AsyncSession = Depends(get_db),
    runtime: AttendanceRuntime = Depends(get_attendance_runtime),
) -> AttendanceVerdict:
    try:
        return await get_verdict(db, meeting_id, identity, runtime.aggregator)
    except (MeetingNotFound, IdentityNotFound) as exc:
        raise HTTPException(status_code=HTTPStatus.NOT_FOUND, detail=str(exc))
