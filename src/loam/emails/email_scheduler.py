"""Dispatcher for admin-scheduled emails.

Runs on a ``PeriodicCoordinator``: due ``pending`` emails are claimed one at a
time (``pending -> processing``), delivered to their recipients in batches
through the process-wide send gate, and finished as ``sent`` or ``failed``.

Lease policy is proceed-unlocked: the ``pending -> processing`` claim alone
guarantees each email is dispatched at most once.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence
from uuid import UUID

import redis.asyncio as aioredis
import sqlalchemy as sa

from loam.coordination.claims import ClaimableJobStore, SessionFactory
from loam.coordination.coordinator import PeriodicCoordinator, UnitOfWork
from loam.coordination.lease import DistributedLease
from loam.coordination.rate_gate import RateLimitedGate
from loam.coordination.ticker import Ticker
from loam.database.database import sessionmanager
from loam.database.tables.scheduled_emails_table import ScheduledEmails
from loam.database.tables.users_table import Users
from loam.emails.email_sender import AnnouncementRenderer, EmailRenderer, EmailSender
from loam.emails.scheduled_email import DispatchResult, EmailMessage, Recipient, ScheduledEmail
from loam.emails.unsubscribe import build_unsubscribe_url
from loam.main.config import Settings, get_settings
from loam.main.exceptions import InvalidJobError
from loam.main.logging import get_logger
from loam.main.models import ScheduledEmailStatus

logger = get_logger(__name__)

EMAIL_SCHEDULER_LOCK_KEY = "lock:email-scheduler:global"
NO_RECIPIENTS = "No recipients specified"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _chunks(items: Sequence[str], size: int):
    for start in range(0, len(items), size):
        yield items[start : start + size]


def scheduled_email_store(
    session_factory: Optional[SessionFactory] = None,
) -> ClaimableJobStore[ScheduledEmail]:
    return ClaimableJobStore(
        ScheduledEmails,
        ScheduledEmail,
        claimable_status=ScheduledEmailStatus.PENDING,
        claimed_status=ScheduledEmailStatus.PROCESSING,
        session_factory=session_factory,
    )


class ScheduledEmailDispatch(UnitOfWork[ScheduledEmail]):
    def __init__(
        self,
        store: ClaimableJobStore[ScheduledEmail],
        sender: EmailSender,
        gate: RateLimitedGate,
        *,
        batch_size: int,
        recipient_batch_size: int,
        renderer: Optional[EmailRenderer] = None,
        session_factory: Optional[SessionFactory] = None,
        unsubscribe_url: Callable[[str], str] = build_unsubscribe_url,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.sender = sender
        self.gate = gate
        self.batch_size = batch_size
        self.recipient_batch_size = recipient_batch_size
        self.renderer = renderer or AnnouncementRenderer()
        self._session_factory = session_factory or sessionmanager.session
        self._unsubscribe_url = unsubscribe_url
        self._clock = clock

    async def select_batch(self) -> list[UUID]:
        return await self.store.candidate_ids(
            ScheduledEmails.scheduled_for <= self._clock(),
            order_by=ScheduledEmails.scheduled_for.asc(),
            limit=self.batch_size,
        )

    async def claim(self, candidate: UUID) -> Optional[ScheduledEmail]:
        return await self.store.claim(candidate)

    async def _load_recipients(self, recipient_ids: Sequence[str]) -> list[Recipient]:
        ids = []
        for recipient_id in recipient_ids:
            try:
                ids.append(UUID(str(recipient_id)))
            except ValueError:
                logger.warning(
                    "Skipping malformed recipient id",
                    extra={"recipient_id": recipient_id},
                )

        if not ids:
            return []

        stmt = sa.select(Users).where(Users.id.in_(ids))
        async with self._session_factory() as session, session.begin():
            rows = (await session.scalars(stmt)).all()
            return [Recipient.model_validate(row) for row in rows]

    async def _send_one(self, email: ScheduledEmail, recipient: Recipient) -> None:
        html = self.renderer.render(
            email, recipient, self._unsubscribe_url(str(recipient.id))
        )
        async with self.gate:
            await self.sender.send(
                EmailMessage(to=recipient.email, subject=email.subject, html=html)
            )

    async def execute(self, record: ScheduledEmail) -> DispatchResult:
        if not record.recipient_ids:
            raise InvalidJobError(record.id, NO_RECIPIENTS)

        logger.info(
            "Processing scheduled email",
            extra={"candidate_id": str(record.id), "recipients": len(record.recipient_ids)},
        )

        result = DispatchResult()
        for batch in _chunks(record.recipient_ids, self.recipient_batch_size):
            for recipient in await self._load_recipients(batch):
                if recipient.email_unsubscribed:
                    result.suppressed += 1
                    continue

                try:
                    await self._send_one(record, recipient)
                    result.sent += 1
                except Exception as exc:
                    result.failed += 1
                    logger.error(
                        "Failed to send scheduled email to recipient",
                        extra={
                            "candidate_id": str(record.id),
                            "recipient_id": str(recipient.id),
                            "error": str(exc),
                        },
                    )

        return result

    async def finalize(
        self,
        record: ScheduledEmail,
        outcome: Any,
        error: Optional[BaseException],
    ) -> None:
        now = self._clock()

        if isinstance(error, InvalidJobError):
            logger.error(
                f"Scheduled email failed: {error.reason}",
                extra={"candidate_id": str(record.id)},
            )
            await self.store.mark_terminal(
                record.id,
                ScheduledEmailStatus.FAILED,
                error_message=error.reason,
                processed_at=now,
            )
            return

        if error is not None or not isinstance(outcome, DispatchResult):
            await self.store.mark_terminal(
                record.id,
                ScheduledEmailStatus.FAILED,
                error_message=str(error)[:500] if error else "Dispatch produced no result",
                processed_at=now,
            )
            return

        await self.store.mark_terminal(
            record.id,
            outcome.final_status,
            sent_count=outcome.sent,
            failed_count=outcome.failed,
            suppressed_count=outcome.suppressed,
            processed_at=now,
            error_message=f"{outcome.failed} emails failed to send" if outcome.failed else None,
        )
        logger.info(
            f"Completed scheduled email: sent={outcome.sent}, "
            f"failed={outcome.failed}, suppressed={outcome.suppressed}",
            extra={"candidate_id": str(record.id)},
        )


def build_email_scheduler(
    redis_client: Optional[aioredis.Redis],
    sender: EmailSender,
    gate: Optional[RateLimitedGate] = None,
    *,
    settings: Optional[Settings] = None,
    renderer: Optional[EmailRenderer] = None,
    session_factory: Optional[SessionFactory] = None,
    ticker: Optional[Ticker] = None,
) -> PeriodicCoordinator[ScheduledEmail]:
    settings = settings or get_settings()
    gate = gate or RateLimitedGate(settings.email_send_interval_seconds, name="email")

    lease = DistributedLease(
        redis_client,
        key=EMAIL_SCHEDULER_LOCK_KEY,
        ttl_seconds=settings.email_scheduler_lock_ttl_seconds,
        on_unavailable=settings.email_scheduler_lock_policy,
    )
    work = ScheduledEmailDispatch(
        scheduled_email_store(session_factory),
        sender,
        gate,
        batch_size=settings.email_scheduler_batch_size,
        recipient_batch_size=settings.email_recipient_batch_size,
        renderer=renderer,
        session_factory=session_factory,
    )
    return PeriodicCoordinator(
        "email_scheduler",
        lease,
        work,
        interval_seconds=settings.email_scheduler_interval_seconds,
        shutdown_wait_seconds=settings.email_scheduler_shutdown_wait_seconds,
        shutdown_poll_seconds=settings.coordinator_shutdown_poll_seconds,
        ticker=ticker,
    )
