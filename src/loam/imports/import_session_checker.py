"""Reaper for bulk ride import sessions.

A session is ``running`` while a provider backfill streams rides in. The
reaper finishes it once the stream has gone quiet:

- idle: activity was received, but none for ``import_session_idle_minutes``
  -> ``completed`` with the number of rides still lacking a bike;
- stale: no activity at all within ``import_session_stale_minutes`` of start
  -> ``completed`` with zero unassigned rides;
- stuck: running longer than ``import_session_stuck_hours`` -> ``failed``.

Lease policy is skip: completion counts rides at claim time, so two reapers
racing is avoided rather than tolerated.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from uuid import UUID

import redis.asyncio as aioredis
import sqlalchemy as sa

from loam.coordination.claims import ClaimableJobStore, SessionFactory
from loam.coordination.coordinator import PeriodicCoordinator, UnitOfWork
from loam.coordination.lease import DistributedLease
from loam.coordination.ticker import Ticker
from loam.database.tables.import_sessions_table import ImportSessions
from loam.database.tables.rides_table import Rides
from loam.imports.import_session import ImportSession
from loam.main.config import Settings, get_settings
from loam.main.logging import get_logger
from loam.main.models import ImportSessionStatus

logger = get_logger(__name__)

IMPORT_SESSION_CHECKER_LOCK_KEY = "lock:import-session-checker:global"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def import_session_store(
    session_factory: Optional[SessionFactory] = None,
) -> ClaimableJobStore[ImportSession]:
    return ClaimableJobStore(
        ImportSessions,
        ImportSession,
        claimable_status=ImportSessionStatus.RUNNING,
        claimed_status=ImportSessionStatus.COMPLETED,
        session_factory=session_factory,
    )


def unassigned_ride_count(session_id: UUID):
    """Correlated count of the session's rides with no bike, evaluated in the claim."""
    return (
        sa.select(sa.func.count())
        .select_from(Rides)
        .where(Rides.import_session_id == session_id)
        .where(Rides.bike_id.is_(None))
        .scalar_subquery()
    )


class ImportSessionReap(UnitOfWork[ImportSession]):
    def __init__(
        self,
        store: ClaimableJobStore[ImportSession],
        *,
        batch_size: int,
        idle_after: timedelta,
        stale_after: timedelta,
        stuck_after: timedelta,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.batch_size = batch_size
        self.idle_after = idle_after
        self.stale_after = stale_after
        self.stuck_after = stuck_after
        self._clock = clock

    async def select_batch(self) -> list[UUID]:
        idle_cutoff = self._clock() - self.idle_after
        return await self.store.candidate_ids(
            ImportSessions.last_activity_received_at.is_not(None),
            ImportSessions.last_activity_received_at <= idle_cutoff,
            order_by=ImportSessions.last_activity_received_at.asc(),
            limit=self.batch_size,
        )

    async def claim(self, candidate: UUID) -> Optional[ImportSession]:
        # The claim is the terminal transition, so the ride count and the
        # status change cannot disagree
        return await self.store.claim(
            candidate,
            completed_at=self._clock(),
            unassigned_ride_count=unassigned_ride_count(candidate),
        )

    async def execute(self, record: ImportSession) -> int:
        logger.info(
            "Completed idle import session",
            extra={
                "candidate_id": str(record.id),
                "unassigned_count": record.unassigned_ride_count,
            },
        )
        return record.unassigned_ride_count

    async def finalize(
        self, record: ImportSession, outcome: Any, error: Optional[BaseException]
    ) -> None:
        # Terminal state was written by the claim
        return None

    async def after_batch(self) -> None:
        await self.complete_stale_sessions()
        await self.fail_stuck_sessions()

    async def complete_stale_sessions(self) -> int:
        now = self._clock()
        count = await self.store.bulk_transition(
            ImportSessions.last_activity_received_at.is_(None),
            ImportSessions.started_at <= now - self.stale_after,
            status=ImportSessionStatus.COMPLETED,
            completed_at=now,
            unassigned_ride_count=0,
        )
        if count:
            logger.info(
                "Completed stale sessions with no activity", extra={"count": count}
            )
        return count

    async def fail_stuck_sessions(self) -> int:
        now = self._clock()
        count = await self.store.bulk_transition(
            ImportSessions.started_at <= now - self.stuck_after,
            status=ImportSessionStatus.FAILED,
            completed_at=now,
            unassigned_ride_count=0,
        )
        if count:
            logger.warning(
                f"Marked stuck sessions as failed (running > {self.stuck_after})",
                extra={"count": count},
            )
        return count


def build_import_session_checker(
    redis_client: Optional[aioredis.Redis],
    *,
    settings: Optional[Settings] = None,
    session_factory: Optional[SessionFactory] = None,
    ticker: Optional[Ticker] = None,
) -> PeriodicCoordinator[ImportSession]:
    settings = settings or get_settings()

    lease = DistributedLease(
        redis_client,
        key=IMPORT_SESSION_CHECKER_LOCK_KEY,
        ttl_seconds=settings.import_session_checker_lock_ttl_seconds,
        on_unavailable=settings.import_session_checker_lock_policy,
    )
    work = ImportSessionReap(
        import_session_store(session_factory),
        batch_size=settings.import_session_checker_batch_size,
        idle_after=timedelta(minutes=settings.import_session_idle_minutes),
        stale_after=timedelta(minutes=settings.import_session_stale_minutes),
        stuck_after=timedelta(hours=settings.import_session_stuck_hours),
    )
    return PeriodicCoordinator(
        "import_session_checker",
        lease,
        work,
        interval_seconds=settings.import_session_checker_interval_seconds,
        shutdown_wait_seconds=settings.import_session_checker_shutdown_wait_seconds,
        shutdown_poll_seconds=settings.coordinator_shutdown_poll_seconds,
        ticker=ticker,
    )
