# app/services/runtime.py
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.clock import Clock, system_clock
from app.core.config import Settings, get_settings
from app.services.event_ingestion import EventIngestor
from app.services.notifications import NotificationChannel
from app.services.reconciliation import ReconciliationDispatcher, ReconciliationEngine
from app.services.scheduler import AsyncioScheduler
from app.services.session_cleanup import StaleSessionSweeper
from app.services.session_aggregator import SessionAggregator
from app.services.zoom_gateway import ZoomGateway, get_zoom_gateway

logger = logging.getLogger(__name__)


class AttendanceRuntime:
    """
    Wires the long-lived collaborators of the service together.

    One instance per process holds the dedup history, the notification
    channel, the reconciliation in-flight set and the background scheduler.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        settings: Optional[Settings] = None,
        gateway: Optional[ZoomGateway] = None,
        clock: Clock = system_clock,
    ) -> None:
        settings = settings or get_settings()
        self.settings = settings
        self.clock = clock
        self.session_factory = session_factory

        self.notifier = NotificationChannel(settings.NOTIFICATION_QUEUE_SIZE, clock=clock)
        self.aggregator = SessionAggregator(settings.ATTENDANCE_THRESHOLD, clock=clock)
        self.gateway = gateway or get_zoom_gateway()
        self.engine = ReconciliationEngine(
            session_factory,
            self.gateway,
            self.aggregator,
            notifier=self.notifier,
            clock=clock,
            max_attempts=settings.RECONCILIATION_MAX_ATTEMPTS,
        )
        self.dispatcher = ReconciliationDispatcher(self.engine)
        self.ingestor = EventIngestor(
            clock=clock,
            notifier=self.notifier,
            dispatcher=self.dispatcher,
            dedup_size=settings.DEDUP_HISTORY_SIZE,
        )
        self.sweeper = StaleSessionSweeper(
            session_factory,
            max_open=timedelta(hours=settings.STALE_SESSION_MAX_OPEN_HOURS),
            clock=clock,
            notifier=self.notifier,
        )
        self.scheduler = AsyncioScheduler()

    async def start(self) -> None:
        self.scheduler.schedule_every(
            self.settings.RECONCILIATION_QUEUE_DRAIN_INTERVAL_SECONDS,
            self.engine.drain_queue,
            name="reconciliation-queue-drain",
        )
        self.scheduler.schedule_every(
            self.settings.STALE_SESSION_SWEEP_INTERVAL_SECONDS,
            self.sweeper.sweep,
            name="stale-session-sweep",
        )

    async def shutdown(self) -> None:
        await self.scheduler.shutdown()
        await self.dispatcher.wait_idle()
        logger.info("Attendance runtime stopped")


_runtime: Optional[AttendanceRuntime] = None


def get_runtime() -> AttendanceRuntime:
    """
    FastAPI dependency returning the process-wide runtime.
    """
    global _runtime
    if _runtime is None:
        from app.db.session import AsyncSessionLocal

        _runtime = AttendanceRuntime(AsyncSessionLocal)
    return _runtime
