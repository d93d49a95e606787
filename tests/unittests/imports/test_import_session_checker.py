"""Tests for the import session reaper."""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import sqlalchemy as sa

from loam.coordination.coordinator import ScanOutcome
from loam.database.tables.import_sessions_table import ImportSessions
from loam.database.tables.rides_table import Rides
from loam.database.tables.users_table import Users
from loam.imports.import_session_checker import (
    IMPORT_SESSION_CHECKER_LOCK_KEY,
    ImportSessionReap,
    build_import_session_checker,
    import_session_store,
)
from loam.main.models import ImportSessionStatus, OnUnavailable

NOW = datetime.now(timezone.utc).replace(microsecond=0)


async def add_user(session_factory):
    user_id = uuid4()
    async with session_factory() as session, session.begin():
        session.add(Users(id=user_id, email=f"{user_id}@example.com"))
    return user_id


async def add_import_session(
    session_factory,
    user_id,
    *,
    started_ago,
    last_activity_ago=None,
    status="running",
    rides=(),
):
    """Insert a session plus rides; ``rides`` holds one bool per ride, True if it has a bike."""
    session_id = uuid4()
    async with session_factory() as session, session.begin():
        session.add(
            ImportSessions(
                id=session_id,
                user_id=user_id,
                provider="strava",
                status=status,
                started_at=NOW - started_ago,
                last_activity_received_at=(
                    NOW - last_activity_ago if last_activity_ago is not None else None
                ),
            )
        )
        await session.flush()
        for has_bike in rides:
            session.add(
                Rides(
                    id=uuid4(),
                    user_id=user_id,
                    import_session_id=session_id,
                    bike_id=uuid4() if has_bike else None,
                )
            )
    return session_id


async def load(session_factory, session_id):
    async with session_factory() as session, session.begin():
        return await session.scalar(
            sa.select(ImportSessions).where(ImportSessions.id == session_id)
        )


def make_reap(session_factory, batch_size=100):
    return ImportSessionReap(
        import_session_store(session_factory),
        batch_size=batch_size,
        idle_after=timedelta(minutes=10),
        stale_after=timedelta(minutes=30),
        stuck_after=timedelta(hours=24),
        clock=lambda: NOW,
    )


class TestIdleSessions:
    async def test_selects_only_idle_running_sessions(self, session_factory):
        user_id = await add_user(session_factory)
        idle = await add_import_session(
            session_factory, user_id, started_ago=timedelta(hours=1), last_activity_ago=timedelta(minutes=15)
        )
        await add_import_session(
            session_factory, user_id, started_ago=timedelta(hours=1), last_activity_ago=timedelta(minutes=2)
        )
        await add_import_session(
            session_factory,
            user_id,
            started_ago=timedelta(hours=1),
            last_activity_ago=timedelta(minutes=15),
            status="completed",
        )

        assert await make_reap(session_factory).select_batch() == [idle]

    async def test_claim_completes_with_unassigned_count(self, session_factory):
        user_id = await add_user(session_factory)
        session_id = await add_import_session(
            session_factory,
            user_id,
            started_ago=timedelta(hours=1),
            last_activity_ago=timedelta(minutes=15),
            rides=(True, False, False),
        )
        reap = make_reap(session_factory)

        record = await reap.claim(session_id)

        assert record.status is ImportSessionStatus.COMPLETED
        assert record.unassigned_ride_count == 2
        assert record.completed_at is not None
        assert await reap.execute(record) == 2

    async def test_second_claim_is_abandoned(self, session_factory):
        user_id = await add_user(session_factory)
        session_id = await add_import_session(
            session_factory, user_id, started_ago=timedelta(hours=1), last_activity_ago=timedelta(minutes=15)
        )
        reap = make_reap(session_factory)

        assert await reap.claim(session_id) is not None
        assert await reap.claim(session_id) is None


class TestBulkSweeps:
    async def test_stale_sessions_complete_with_zero_unassigned(self, session_factory):
        user_id = await add_user(session_factory)
        stale = await add_import_session(session_factory, user_id, started_ago=timedelta(minutes=45))
        fresh = await add_import_session(session_factory, user_id, started_ago=timedelta(minutes=5))

        count = await make_reap(session_factory).complete_stale_sessions()

        assert count == 1
        stale_row = await load(session_factory, stale)
        assert stale_row.status == ImportSessionStatus.COMPLETED.value
        assert stale_row.unassigned_ride_count == 0
        assert (await load(session_factory, fresh)).status == ImportSessionStatus.RUNNING.value

    async def test_stuck_sessions_fail(self, session_factory):
        user_id = await add_user(session_factory)
        # Still receiving activity, but running for more than a day
        stuck = await add_import_session(
            session_factory, user_id, started_ago=timedelta(hours=30), last_activity_ago=timedelta(minutes=1)
        )

        count = await make_reap(session_factory).fail_stuck_sessions()

        assert count == 1
        assert (await load(session_factory, stuck)).status == ImportSessionStatus.FAILED.value


class TestChecker:
    async def test_full_scan(self, session_factory, fake_redis, test_settings):
        user_id = await add_user(session_factory)
        idle = await add_import_session(
            session_factory,
            user_id,
            started_ago=timedelta(hours=1),
            last_activity_ago=timedelta(hours=1),
            rides=(False,),
        )
        stale = await add_import_session(session_factory, user_id, started_ago=timedelta(hours=2))
        checker = build_import_session_checker(
            fake_redis, settings=test_settings, session_factory=session_factory
        )

        report = await checker.run_once()

        assert report.outcome is ScanOutcome.COMPLETED
        assert report.claimed == 1
        idle_row = await load(session_factory, idle)
        assert idle_row.status == ImportSessionStatus.COMPLETED.value
        assert idle_row.unassigned_ride_count == 1
        assert (await load(session_factory, stale)).status == ImportSessionStatus.COMPLETED.value
        assert IMPORT_SESSION_CHECKER_LOCK_KEY not in fake_redis.store

    async def test_skips_when_lease_store_is_down(
        self, session_factory, failing_redis, test_settings
    ):
        user_id = await add_user(session_factory)
        session_id = await add_import_session(
            session_factory, user_id, started_ago=timedelta(hours=1), last_activity_ago=timedelta(hours=1)
        )
        checker = build_import_session_checker(
            failing_redis, settings=test_settings, session_factory=session_factory
        )

        report = await checker.run_once()

        assert checker._lease.on_unavailable is OnUnavailable.SKIP
        assert report.outcome is ScanOutcome.SKIPPED_LOCKED
        assert (await load(session_factory, session_id)).status == ImportSessionStatus.RUNNING.value
