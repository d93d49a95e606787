"""Tests for scheduled email dispatch: claims, suppression and terminal rules."""

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
import sqlalchemy as sa

from loam.coordination.coordinator import ScanOutcome
from loam.coordination.rate_gate import RateLimitedGate
from loam.database.tables.scheduled_emails_table import ScheduledEmails
from loam.database.tables.users_table import Users
from loam.emails.email_scheduler import (
    EMAIL_SCHEDULER_LOCK_KEY,
    NO_RECIPIENTS,
    ScheduledEmailDispatch,
    build_email_scheduler,
    scheduled_email_store,
)
from loam.main.models import OnUnavailable, ScheduledEmailStatus

NOW = datetime.now(timezone.utc).replace(microsecond=0)


class RecordingSender:
    """EmailSender double that records messages and can fail for chosen addresses."""

    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.messages = []

    async def send(self, message):
        if message.to in self.fail_for:
            raise RuntimeError(f"rejected {message.to}")
        self.messages.append(message)
        return f"msg-{len(self.messages)}"


async def add_users(session_factory, *specs):
    """Insert users from (email, unsubscribed) pairs and return their ids as strings."""
    ids = []
    async with session_factory() as session, session.begin():
        for email, unsubscribed in specs:
            user = Users(id=uuid4(), email=email, name="Ada Lovelace", email_unsubscribed=unsubscribed)
            session.add(user)
            ids.append(str(user.id))
    return ids


async def add_email(session_factory, recipient_ids, scheduled_for=NOW - timedelta(minutes=1), status="pending"):
    email_id = uuid4()
    async with session_factory() as session, session.begin():
        session.add(
            ScheduledEmails(
                id=email_id,
                subject="Trail day",
                message_html="<p>See you at the trailhead</p>",
                recipient_ids=recipient_ids,
                recipient_count=len(recipient_ids),
                scheduled_for=scheduled_for,
                status=status,
                created_by="admin",
            )
        )
    return email_id


async def load_email(session_factory, email_id):
    async with session_factory() as session, session.begin():
        return await session.scalar(sa.select(ScheduledEmails).where(ScheduledEmails.id == email_id))


def make_dispatch(session_factory, sender, **kwargs):
    kwargs.setdefault("batch_size", 10)
    kwargs.setdefault("recipient_batch_size", 50)
    return ScheduledEmailDispatch(
        scheduled_email_store(session_factory),
        sender,
        RateLimitedGate(0, name="test-email"),
        session_factory=session_factory,
        unsubscribe_url=lambda user_id: f"https://example.test/unsubscribe/{user_id}",
        clock=lambda: NOW,
        **kwargs,
    )


async def dispatch(work, email_id):
    """Run claim -> execute -> finalize for one email the way the coordinator does."""
    record = await work.claim(email_id)
    assert record is not None
    outcome, error = None, None
    try:
        outcome = await work.execute(record)
    except Exception as exc:
        error = exc
    await work.finalize(record, outcome, error)
    return outcome, error


class TestSelection:
    async def test_selects_only_due_pending_emails_earliest_first(self, session_factory):
        later = await add_email(session_factory, ["x"], scheduled_for=NOW - timedelta(minutes=1))
        earlier = await add_email(session_factory, ["x"], scheduled_for=NOW - timedelta(hours=1))
        await add_email(session_factory, ["x"], scheduled_for=NOW + timedelta(hours=1))
        await add_email(session_factory, ["x"], status="sent")

        work = make_dispatch(session_factory, RecordingSender())

        assert await work.select_batch() == [earlier, later]

    async def test_batch_size_bounds_selection(self, session_factory):
        for _ in range(3):
            await add_email(session_factory, ["x"])

        work = make_dispatch(session_factory, RecordingSender(), batch_size=2)

        assert len(await work.select_batch()) == 2


class TestDispatch:
    async def test_all_delivered_is_sent(self, session_factory):
        recipients = await add_users(session_factory, ("a@example.com", False), ("b@example.com", False))
        email_id = await add_email(session_factory, recipients)
        sender = RecordingSender()

        outcome, error = await dispatch(make_dispatch(session_factory, sender), email_id)

        assert error is None
        row = await load_email(session_factory, email_id)
        assert row.status == ScheduledEmailStatus.SENT.value
        assert row.sent_count == 2
        assert row.failed_count == 0
        assert row.error_message is None
        assert row.processed_at is not None
        assert sorted(m.to for m in sender.messages) == ["a@example.com", "b@example.com"]

    async def test_messages_carry_greeting_and_unsubscribe_link(self, session_factory):
        recipients = await add_users(session_factory, ("a@example.com", False))
        email_id = await add_email(session_factory, recipients)
        sender = RecordingSender()

        await dispatch(make_dispatch(session_factory, sender), email_id)

        html = sender.messages[0].html
        assert "Hi Ada," in html
        assert f"https://example.test/unsubscribe/{recipients[0]}" in html
        assert sender.messages[0].subject == "Trail day"

    async def test_partial_failure_is_sent_with_error_message(self, session_factory):
        recipients = await add_users(session_factory, ("a@example.com", False), ("b@example.com", False))
        email_id = await add_email(session_factory, recipients)

        await dispatch(make_dispatch(session_factory, RecordingSender(fail_for={"b@example.com"})), email_id)

        row = await load_email(session_factory, email_id)
        assert row.status == ScheduledEmailStatus.SENT.value
        assert row.sent_count == 1
        assert row.failed_count == 1
        assert row.error_message == "1 emails failed to send"

    async def test_every_recipient_failing_is_failed(self, session_factory):
        recipients = await add_users(session_factory, ("a@example.com", False))
        email_id = await add_email(session_factory, recipients)

        await dispatch(make_dispatch(session_factory, RecordingSender(fail_for={"a@example.com"})), email_id)

        row = await load_email(session_factory, email_id)
        assert row.status == ScheduledEmailStatus.FAILED.value
        assert row.failed_count == 1

    async def test_no_recipients_fails_with_reason(self, session_factory):
        email_id = await add_email(session_factory, [])
        sender = RecordingSender()

        await dispatch(make_dispatch(session_factory, sender), email_id)

        row = await load_email(session_factory, email_id)
        assert row.status == ScheduledEmailStatus.FAILED.value
        assert row.error_message == NO_RECIPIENTS
        assert sender.messages == []

    async def test_unsubscribed_recipients_are_suppressed(self, session_factory):
        recipients = await add_users(session_factory, ("a@example.com", False), ("b@example.com", True))
        email_id = await add_email(session_factory, recipients)
        sender = RecordingSender()

        await dispatch(make_dispatch(session_factory, sender), email_id)

        row = await load_email(session_factory, email_id)
        assert row.status == ScheduledEmailStatus.SENT.value
        assert row.sent_count == 1
        assert row.suppressed_count == 1
        assert [m.to for m in sender.messages] == ["a@example.com"]

    async def test_all_suppressed_counts_as_handled(self, session_factory):
        recipients = await add_users(session_factory, ("b@example.com", True))
        email_id = await add_email(session_factory, recipients)

        await dispatch(make_dispatch(session_factory, RecordingSender()), email_id)

        row = await load_email(session_factory, email_id)
        assert row.status == ScheduledEmailStatus.SENT.value
        assert row.suppressed_count == 1
        assert row.sent_count == 0

    async def test_recipients_are_loaded_in_batches(self, session_factory):
        recipients = await add_users(
            session_factory, *[(f"user{i}@example.com", False) for i in range(5)]
        )
        email_id = await add_email(session_factory, recipients)
        work = make_dispatch(session_factory, RecordingSender(), recipient_batch_size=2)
        batches = []
        original = work._load_recipients

        async def load(batch):
            batches.append(len(batch))
            return await original(batch)

        work._load_recipients = load

        outcome, _ = await dispatch(work, email_id)

        assert batches == [2, 2, 1]
        assert outcome.sent == 5

    async def test_unknown_and_malformed_ids_are_ignored(self, session_factory):
        recipients = await add_users(session_factory, ("a@example.com", False))
        email_id = await add_email(session_factory, recipients + [str(uuid4()), "not-a-uuid"])

        outcome, _ = await dispatch(make_dispatch(session_factory, RecordingSender()), email_id)

        assert outcome.sent == 1
        assert outcome.total == 1

    async def test_unexpected_error_marks_failed(self, session_factory):
        recipients = await add_users(session_factory, ("a@example.com", False))
        email_id = await add_email(session_factory, recipients)
        work = make_dispatch(session_factory, RecordingSender())

        async def boom(batch):
            raise RuntimeError("database went away")

        work._load_recipients = boom

        _, error = await dispatch(work, email_id)

        assert isinstance(error, RuntimeError)
        row = await load_email(session_factory, email_id)
        assert row.status == ScheduledEmailStatus.FAILED.value
        assert row.error_message == "database went away"


class TestExclusivity:
    async def test_email_is_claimed_once(self, session_factory):
        recipients = await add_users(session_factory, ("a@example.com", False))
        email_id = await add_email(session_factory, recipients)
        work = make_dispatch(session_factory, RecordingSender())

        first = await work.claim(email_id)
        second = await work.claim(email_id)

        assert first is not None
        assert first.status == ScheduledEmailStatus.PROCESSING
        assert second is None

    async def test_two_unlocked_schedulers_send_each_email_once(
        self, session_factory, failing_redis, test_settings
    ):
        """With Redis down both instances proceed, and the claim keeps delivery single."""
        recipients = await add_users(session_factory, ("a@example.com", False), ("b@example.com", False))
        email_ids = [await add_email(session_factory, recipients) for _ in range(3)]
        sender = RecordingSender()

        schedulers = [
            build_email_scheduler(
                failing_redis,
                sender,
                RateLimitedGate(0),
                settings=test_settings,
                session_factory=session_factory,
            )
            for _ in range(2)
        ]

        reports = await asyncio.gather(*(s.run_once() for s in schedulers))

        assert all(r.outcome is ScanOutcome.COMPLETED for r in reports)
        assert sum(r.claimed for r in reports) == 3
        assert len(sender.messages) == 6
        for email_id in email_ids:
            row = await load_email(session_factory, email_id)
            assert row.status == ScheduledEmailStatus.SENT.value


class TestBuildEmailScheduler:
    def test_uses_configured_lease(self, fake_redis, test_settings):
        scheduler = build_email_scheduler(fake_redis, RecordingSender(), settings=test_settings)

        assert scheduler.name == "email_scheduler"
        assert scheduler._lease.key == EMAIL_SCHEDULER_LOCK_KEY
        assert scheduler._lease.on_unavailable == test_settings.email_scheduler_lock_policy

    @pytest.mark.parametrize("policy", [OnUnavailable.PROCEED_UNLOCKED, OnUnavailable.SKIP])
    def test_lock_policy_is_configurable(self, fake_redis, test_settings, policy):
        settings = test_settings.model_copy(update={"email_scheduler_lock_policy": policy})

        scheduler = build_email_scheduler(fake_redis, RecordingSender(), settings=settings)

        assert scheduler._lease.on_unavailable is policy
