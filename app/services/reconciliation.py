# app/services/reconciliation.py
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.clock import Clock, system_clock
from app.models.participant_session import ParticipantSession
from app.schemas.meeting import ConnectionStatus, SessionSource
from app.schemas.reconciliation import (
    AuthoritativeParticipant,
    QueueDrainSummary,
    ReconciliationEntryError,
    ReconciliationResult,
)
from app.services.meeting_lookup import (
    MeetingNotFound,
    get_meeting,
    get_meeting_by_uuid,
    list_meeting_sessions,
)
from app.services.notifications import NotificationChannel, NotificationKind
from app.services.reconciliation_queue import (
    enqueue_reconciliation,
    exhaust_if_spent,
    list_queue,
    mark_exhausted,
    remove_from_queue,
)
from app.services.session_aggregator import SessionAggregator
from app.services.timestamps import parse_utc
from app.services.zoom_gateway import (
    UpstreamNotFound,
    ZoomGateway,
    ZoomGatewayError,
    encode_meeting_uuid,
)

logger = logging.getLogger(__name__)

REPORT_PAGE_SIZE = 300
JOIN_PROXIMITY = timedelta(minutes=5)


class ConcurrentReconciliation(RuntimeError):
    """A reconciliation for the same meeting is already running."""


# ---------------------------------------------------------------------------
# Matching strategies, tried in order; the first one with any hit wins.
# ---------------------------------------------------------------------------

MatchStrategy = Callable[[AuthoritativeParticipant, datetime, ParticipantSession], bool]


def _fold(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return value.strip().casefold() or None


def match_participant_id(entry: AuthoritativeParticipant, join: datetime, session: ParticipantSession) -> bool:
    if not entry.id:
        return False
    return entry.id in (session.participant_id, session.participant_uuid)


def match_user_id(entry: AuthoritativeParticipant, join: datetime, session: ParticipantSession) -> bool:
    return bool(entry.user_id) and entry.user_id == session.zoom_user_id


def match_email(entry: AuthoritativeParticipant, join: datetime, session: ParticipantSession) -> bool:
    email = _fold(entry.email)
    return email is not None and email == _fold(session.participant_email)


def match_exact_name(entry: AuthoritativeParticipant, join: datetime, session: ParticipantSession) -> bool:
    name = _fold(entry.user_name)
    return name is not None and name == _fold(session.participant_name)


def match_name_substring(entry: AuthoritativeParticipant, join: datetime, session: ParticipantSession) -> bool:
    name = _fold(entry.user_name)
    other = _fold(session.participant_name)
    if name is None or other is None:
        return False
    return name in other or other in name


def match_join_proximity(entry: AuthoritativeParticipant, join: datetime, session: ParticipantSession) -> bool:
    return abs(session.join_time - join) <= JOIN_PROXIMITY


MATCH_STRATEGIES: List[Tuple[str, MatchStrategy]] = [
    ("participant_id", match_participant_id),
    ("user_id", match_user_id),
    ("email", match_email),
    ("exact_name", match_exact_name),
    ("name_substring", match_name_substring),
    ("join_proximity", match_join_proximity),
]

# Identity adoption for reconnection rows never uses timing.
IDENTITY_STRATEGIES = MATCH_STRATEGIES[:-1]


def find_match(
    entry: AuthoritativeParticipant,
    join: datetime,
    candidates: Sequence[ParticipantSession],
    strategies: Sequence[Tuple[str, MatchStrategy]] = MATCH_STRATEGIES,
) -> Optional[Tuple[str, ParticipantSession]]:
    """
    Return `(strategy_name, session)` for the first strategy with a hit.

    When one strategy hits several sessions (a participant who reconnected),
    the session whose join time is closest to the entry's wins.
    """
    for name, strategy in strategies:
        hits = [s for s in candidates if strategy(entry, join, s)]
        if hits:
            return name, min(hits, key=lambda s: abs(s.join_time - join))
    return None


class ReconciliationEngine:
    """
    Merges the post-meeting participant report into event-derived sessions.

    Steps
    -----
    1) Load the meeting; stop early (`already_reconciled`) when attendance
       was already calculated and the run is not forced.
    2) Fetch every page of the participant report through the gateway
       (`category="report"`). A 404 means there is no report; the run
       continues with event data only. Any other gateway failure queues the
       meeting for retry and leaves it unmarked.
    3) Match each report row against sessions not yet claimed in this run
       (see MATCH_STRATEGIES). Matched sessions take the report's timing;
       unmatched rows become new sessions.
    4) Recompute verdicts for every identity and annotate the sessions.
    5) Mark the meeting calculated (only once no session is open) and drop
       it from the retry queue.

    Runs for the same occurrence are exclusive, whether they were asked for
    by meeting id or by uuid; a second concurrent call raises
    ConcurrentReconciliation immediately.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: ZoomGateway,
        aggregator: SessionAggregator,
        *,
        notifier: Optional[NotificationChannel] = None,
        clock: Clock = system_clock,
        max_attempts: int = 5,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.aggregator = aggregator
        self.notifier = notifier
        self.clock = clock
        self.max_attempts = max_attempts
        self._in_flight: Set[str] = set()
        self.stats = {"runs": 0, "succeeded": 0, "failed": 0, "skipped": 0}

    @property
    def in_flight(self) -> frozenset:
        return frozenset(self._in_flight)

    async def reconcile(self, meeting_id: str, *, force: bool = False) -> ReconciliationResult:
        """
        Reconcile the occurrence `meeting_id` resolves to (a meeting id picks
        the latest occurrence, a uuid picks that occurrence).
        """
        async with self.session_factory() as db:
            meeting_uuid = (await get_meeting(db, meeting_id)).meeting_uuid

        # Check-and-set on the occurrence with no await in between, so a call
        # by meeting id and one by uuid cannot both run.
        if meeting_uuid in self._in_flight:
            raise ConcurrentReconciliation(f"Reconciliation for meeting {meeting_id} is already running")
        self._in_flight.add(meeting_uuid)
        try:
            return await self._reconcile(meeting_uuid, force)
        finally:
            self._in_flight.discard(meeting_uuid)

    async def _reconcile(self, meeting_uuid: str, force: bool) -> ReconciliationResult:
        started_at = self.clock.now()

        async with self.session_factory() as db:
            meeting = await get_meeting_by_uuid(db, meeting_uuid)
            if meeting.attendance_calculated and not force:
                self.stats["skipped"] += 1
                logger.info("Meeting %s (%s) already reconciled; skipping", meeting.meeting_id, meeting_uuid)
                await remove_from_queue(db, meeting_uuid)
                return ReconciliationResult(
                    meeting_id=meeting.meeting_id,
                    meeting_uuid=meeting_uuid,
                    success=True,
                    already_reconciled=True,
                    started_at=started_at,
                    finished_at=self.clock.now(),
                )
            canonical_id = meeting.meeting_id

        self.stats["runs"] += 1
        logger.info("Reconciling meeting %s (uuid=%s, force=%s)", canonical_id, meeting_uuid, force)

        # Fetch outside any DB session; this may wait on rate limits.
        report_missing = False
        try:
            raw_entries = await self.fetch_participants(meeting_uuid)
        except UpstreamNotFound:
            logger.warning("No participant report for meeting %s; using event data only", canonical_id)
            raw_entries = []
            report_missing = True
        except ZoomGatewayError as exc:
            return await self._fail(canonical_id, meeting_uuid, exc, started_at)

        async with self.session_factory() as db:
            result = await self._merge(db, canonical_id, meeting_uuid, raw_entries, report_missing)

        result.started_at = started_at
        result.finished_at = self.clock.now()
        self.stats["succeeded"] += 1

        logger.info(
            "Reconciled meeting %s: %d report rows, %d matched, %d created, %d updated, %d errors",
            canonical_id,
            result.authoritative_participants,
            result.matched,
            result.created,
            result.updated,
            len(result.errors),
        )
        return result

    async def fetch_participants(self, meeting_uuid: str) -> List[Dict[str, Any]]:
        """
        All participant report rows for a meeting occurrence, across pages.
        """
        path = f"/report/meetings/{encode_meeting_uuid(meeting_uuid)}/participants"
        rows: List[Dict[str, Any]] = []
        seen_tokens: Set[str] = set()
        page_token: Optional[str] = None

        while True:
            params: Dict[str, Any] = {"page_size": REPORT_PAGE_SIZE}
            if page_token:
                params["next_page_token"] = page_token

            payload = await self.gateway.get_json(path, params=params, category="report")
            rows.extend(payload.get("participants") or [])

            page_token = payload.get("next_page_token") or None
            if not page_token:
                break
            if page_token in seen_tokens:
                logger.warning("Report for %s repeated page token %s; stopping", meeting_uuid, page_token)
                break
            seen_tokens.add(page_token)

        return rows

    async def _merge(
        self,
        db: AsyncSession,
        meeting_id: str,
        meeting_uuid: str,
        raw_entries: Iterable[Dict[str, Any]],
        report_missing: bool = False,
    ) -> ReconciliationResult:
        now = self.clock.now()
        meeting = await get_meeting_by_uuid(db, meeting_uuid)
        sessions = await list_meeting_sessions(db, meeting_uuid)

        result = ReconciliationResult(
            meeting_id=meeting_id,
            meeting_uuid=meeting_uuid,
            event_sessions=len(sessions),
            report_missing=report_missing,
        )
        claimed: Set[int] = set()

        for index, raw in enumerate(raw_entries):
            result.authoritative_participants += 1
            try:
                entry = AuthoritativeParticipant.from_api(raw)
                join, leave = self._entry_interval(entry)
            except (ValidationError, ValueError, TypeError) as exc:
                label = _entry_label(raw)
                logger.warning("Skipping report row %s for meeting %s: %s", label, meeting_id, exc)
                result.errors.append(ReconciliationEntryError(participant=label, error=str(exc)))
                continue

            unclaimed = [s for s in sessions if s.id not in claimed]
            match = find_match(entry, join, unclaimed)

            if match is not None:
                strategy, session = match
                logger.debug(
                    "Report row %s matched session %s by %s",
                    entry.user_name or entry.id,
                    session.id,
                    strategy,
                )
                if self._apply_entry(session, entry, join, leave, now):
                    result.updated += 1
                result.matched += 1
                claimed.add(session.id)
                continue

            identity = self._adopt_identity(entry, join, [s for s in sessions if s.id in claimed])
            if identity is None:
                identity = f"api_{meeting_uuid}_{entry.id or entry.user_id or index}"

            session = self._session_from_entry(meeting.meeting_id, meeting_uuid, identity, entry, join, leave, now)
            db.add(session)
            await db.flush()
            sessions.append(session)
            claimed.add(session.id)
            result.created += 1

        result.verdicts_written = self._annotate_verdicts(sessions, meeting.effective_duration_minutes, now)

        if any(s.is_open for s in sessions):
            logger.info("Meeting %s still has open sessions; not marking attendance calculated", meeting_id)
        else:
            meeting.attendance_calculated = True
            meeting.attendance_calculated_at = now
        meeting.reconciliation_error = None

        await db.commit()
        await remove_from_queue(db, meeting_uuid)

        result.success = True
        if self.notifier is not None:
            self.notifier.emit(
                NotificationKind.ATTENDANCE_CALCULATED,
                meeting.meeting_id,
                meeting_uuid=meeting_uuid,
                participants=result.verdicts_written,
                created=result.created,
                updated=result.updated,
                report_missing=report_missing,
            )
        return result

    async def _fail(
        self,
        meeting_id: str,
        meeting_uuid: str,
        exc: ZoomGatewayError,
        started_at: datetime,
    ) -> ReconciliationResult:
        self.stats["failed"] += 1
        error = f"{type(exc).__name__}: {exc}"
        logger.error("Reconciliation for meeting %s failed: %s", meeting_id, error)

        async with self.session_factory() as db:
            meeting = await get_meeting_by_uuid(db, meeting_uuid)
            meeting.reconciliation_error = error
            item = await enqueue_reconciliation(
                db,
                meeting_uuid,
                now=self.clock.now(),
                meeting_id=meeting_id,
                error=error,
            )
            attempts = item.attempts

        if self.notifier is not None:
            self.notifier.emit(
                NotificationKind.RECONCILIATION_FAILED,
                meeting_id,
                meeting_uuid=meeting_uuid,
                error=error,
                attempts=attempts,
                exhausted=False,
            )

        return ReconciliationResult(
            meeting_id=meeting_id,
            meeting_uuid=meeting_uuid,
            success=False,
            queued_for_retry=True,
            errors=[ReconciliationEntryError(error=error, type=type(exc).__name__)],
            started_at=started_at,
            finished_at=self.clock.now(),
        )

    async def drain_queue(self) -> QueueDrainSummary:
        """
        Retry queued occurrences, lowest priority number and oldest first.
        Each item is reconciled by its own uuid, never by the recurring id.

        Items that reach `max_attempts` failed attempts are marked exhausted
        and reported through a `reconciliation_failed` notification; they
        stay in the queue so the failure remains visible.
        """
        async with self.session_factory() as db:
            items = await list_queue(db, include_exhausted=False)
            pending = [(item.meeting_id, item.meeting_uuid) for item in items]

        summary = QueueDrainSummary()
        for meeting_id, meeting_uuid in pending:
            if meeting_uuid in self._in_flight:
                summary.skipped += 1
                continue

            try:
                result = await self.reconcile(meeting_uuid)
            except ConcurrentReconciliation:
                summary.skipped += 1
                continue
            except MeetingNotFound as exc:
                summary.processed += 1
                summary.failed += 1
                await self._record_missing_meeting(meeting_uuid, str(exc))
                summary.exhausted += 1
                continue

            summary.processed += 1
            summary.results.append(result)
            if result.success:
                summary.succeeded += 1
                continue

            summary.failed += 1
            async with self.session_factory() as db:
                item = await exhaust_if_spent(db, meeting_uuid, self.max_attempts)
            if item is not None:
                summary.exhausted += 1
                if self.notifier is not None:
                    self.notifier.emit(
                        NotificationKind.RECONCILIATION_FAILED,
                        meeting_id or meeting_uuid,
                        meeting_uuid=meeting_uuid,
                        error=item.last_error,
                        attempts=item.attempts,
                        exhausted=True,
                    )

        if summary.processed or summary.skipped:
            logger.info(
                "Drained reconciliation queue: %d processed, %d succeeded, %d failed, %d exhausted, %d skipped",
                summary.processed,
                summary.succeeded,
                summary.failed,
                summary.exhausted,
                summary.skipped,
            )
        return summary

    async def _record_missing_meeting(self, meeting_uuid: str, error: str) -> None:
        async with self.session_factory() as db:
            await enqueue_reconciliation(db, meeting_uuid, now=self.clock.now(), error=error)
            await mark_exhausted(db, meeting_uuid)

    # ------------------------------------------------------------------
    # Merge helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _entry_interval(entry: AuthoritativeParticipant) -> Tuple[datetime, datetime]:
        join = parse_utc(entry.join_time)
        if join is None:
            raise ValueError(f"report row has no usable join_time ({entry.join_time!r})")
        leave = parse_utc(entry.leave_time)
        if leave is None:
            leave = join + timedelta(seconds=entry.duration)
        if leave < join:
            leave = join
        return join, leave

    @staticmethod
    def _entry_duration(entry: AuthoritativeParticipant, join: datetime, leave: datetime) -> int:
        if entry.duration > 0:
            return entry.duration
        return int(round((leave - join).total_seconds()))

    def _apply_entry(
        self,
        session: ParticipantSession,
        entry: AuthoritativeParticipant,
        join: datetime,
        leave: datetime,
        now: datetime,
    ) -> bool:
        """
        Overwrite timing with the report values; identity and provenance of
        the event-derived session are kept. Returns True if anything changed.
        """
        duration = self._entry_duration(entry, join, leave)
        changed = (
            session.join_time != join
            or session.leave_time != leave
            or session.duration_seconds != duration
            or not session.is_reconciled
        )

        session.join_time = join
        session.leave_time = leave
        session.duration_seconds = duration
        session.connection_status = ConnectionStatus.LEFT.value
        session.timestamp_substituted = False

        session.participant_id = session.participant_id or entry.id
        session.zoom_user_id = session.zoom_user_id or entry.user_id
        session.participant_name = session.participant_name or entry.user_name
        session.participant_email = session.participant_email or entry.email

        session.is_reconciled = True
        session.source = SessionSource.API_RECONCILE.value
        session.reconciled_at = now
        return changed

    @staticmethod
    def _adopt_identity(
        entry: AuthoritativeParticipant,
        join: datetime,
        claimed: Sequence[ParticipantSession],
    ) -> Optional[str]:
        match = find_match(entry, join, claimed, IDENTITY_STRATEGIES)
        if match is None:
            return None
        return match[1].participant_uuid

    def _session_from_entry(
        self,
        meeting_id: str,
        meeting_uuid: str,
        identity: str,
        entry: AuthoritativeParticipant,
        join: datetime,
        leave: datetime,
        now: datetime,
    ) -> ParticipantSession:
        return ParticipantSession(
            meeting_id=meeting_id,
            meeting_uuid=meeting_uuid,
            participant_uuid=identity,
            participant_id=entry.id,
            zoom_user_id=entry.user_id,
            participant_name=entry.user_name,
            participant_email=entry.email,
            join_time=join,
            leave_time=leave,
            duration_seconds=self._entry_duration(entry, join, leave),
            connection_status=ConnectionStatus.LEFT.value,
            source=SessionSource.API_RECONCILE.value,
            is_reconciled=True,
            reconciled_at=now,
            timestamp_substituted=False,
        )

    def _annotate_verdicts(
        self,
        sessions: Sequence[ParticipantSession],
        meeting_duration_minutes: Optional[float],
        now: datetime,
    ) -> int:
        verdicts = self.aggregator.aggregate_meeting(sessions, meeting_duration_minutes, now=now)
        for session in sessions:
            verdict = verdicts.get(session.participant_uuid)
            if verdict is None:
                continue
            session.attendance_percentage = verdict.attendance_percentage
            session.attendance_status = verdict.status.value
        return len(verdicts)


def _entry_label(raw: Any) -> Optional[str]:
    if not isinstance(raw, dict):
        return None
    for key in ("user_name", "name", "email", "id", "user_id"):
        value = raw.get(key)
        if value:
            return str(value)
    return None


class ReconciliationDispatcher:
    """
    Fire-and-forget launcher used by ingestion on `meeting_ended`.

    `trigger()` returns immediately; failures are logged here, and gateway
    failures have already been queued for retry by the engine.
    """

    def __init__(self, engine: ReconciliationEngine) -> None:
        self.engine = engine
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def trigger(self, meeting_id: str, *, force: bool = False) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(
            self._run(meeting_id, force),
            name=f"reconcile-{meeting_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, meeting_id: str, force: bool) -> Optional[ReconciliationResult]:
        try:
            return await self.engine.reconcile(meeting_id, force=force)
        except ConcurrentReconciliation:
            logger.info("Reconciliation for meeting %s already running; trigger ignored", meeting_id)
        except MeetingNotFound:
            logger.warning("Reconciliation triggered for unknown meeting %s", meeting_id)
        except Exception:
            logger.exception("Background reconciliation for meeting %s crashed", meeting_id)
        return None

    async def wait_idle(self) -> None:
        """
        Wait for every triggered reconciliation to finish.
        """
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


async def drain_reconciliation_queue(engine: ReconciliationEngine) -> QueueDrainSummary:
    return await engine.drain_queue()
