"""Generic lease + claim scan loop for periodic background work.

A coordinator tick goes through:

    guard -> lease -> select batch -> per candidate: claim -> execute -> finalize
          -> after_batch -> release lease

Concrete jobs only implement ``UnitOfWork``; the loop owns overlap
protection, lease handling, error isolation and graceful shutdown.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Sequence, TypeVar
from uuid import UUID, uuid4

from loam.coordination.lease import DistributedLease, LeaseGrant
from loam.coordination.ticker import AsyncioTicker, Ticker
from loam.main.logging import get_logger
from loam.main.run_context import run_context

logger = get_logger(__name__)

R = TypeVar("R")


class ScanOutcome(str, Enum):
    SKIPPED_BUSY = "skipped_busy"
    SKIPPED_LOCKED = "skipped_locked"
    SKIPPED_STOPPED = "skipped_stopped"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ScanReport:
    outcome: ScanOutcome
    candidates: int = 0
    claimed: int = 0
    skipped: int = 0
    failed: int = 0


class UnitOfWork(ABC, Generic[R]):
    """The job-specific half of a periodic coordinator."""

    @abstractmethod
    async def select_batch(self) -> Sequence[UUID]:
        """Bounded, ordered ids of records that are due."""

    @abstractmethod
    async def claim(self, candidate: UUID) -> R | None:
        """Atomically claim one candidate. None means another runner has it."""

    @abstractmethod
    async def execute(self, record: R) -> Any:
        """Do the work for a claimed record and return its outcome."""

    @abstractmethod
    async def finalize(self, record: R, outcome: Any, error: BaseException | None) -> None:
        """Write the terminal state. Called even when ``execute`` raised."""

    def candidate_id(self, candidate: UUID) -> str:
        return str(candidate)

    async def after_batch(self) -> None:
        return None


class PeriodicCoordinator(Generic[R]):
    """Runs a ``UnitOfWork`` every ``interval_seconds`` on at most one instance.

    Args:
        name: Label for logs and the run context.
        lease: Distributed lease guarding a scan.
        unit_of_work: Job-specific selection, claim, execution and finalization.
        interval_seconds: Time between scan starts.
        shutdown_wait_seconds: Upper bound ``stop()`` waits for an in-flight scan.
        shutdown_poll_seconds: Poll period while waiting in ``stop()``.
        ticker: Scheduler, defaults to an ``AsyncioTicker``.
    """

    def __init__(
        self,
        name: str,
        lease: DistributedLease,
        unit_of_work: UnitOfWork[R],
        interval_seconds: float,
        shutdown_wait_seconds: float,
        shutdown_poll_seconds: float = 1.0,
        ticker: Ticker | None = None,
    ) -> None:
        self.name = name
        self._lease = lease
        self._work = unit_of_work
        self._interval = interval_seconds
        self._shutdown_wait = shutdown_wait_seconds
        self._shutdown_poll = shutdown_poll_seconds
        self._ticker = ticker or AsyncioTicker(name=name)
        self._is_processing = False
        self._stopping = False

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    @property
    def running(self) -> bool:
        return self._ticker.running

    async def run_once(self) -> ScanReport:
        """Run a single scan. Never raises."""
        # A tick scheduled before stop() may only start running afterwards
        if self._stopping:
            logger.debug(f"{self.name}: stopping, skipping scan")
            return ScanReport(outcome=ScanOutcome.SKIPPED_STOPPED)

        # Set before the lease attempt so a slow Redis cannot let ticks overlap
        if self._is_processing:
            logger.debug(f"{self.name}: previous scan still running, skipping")
            return ScanReport(outcome=ScanOutcome.SKIPPED_BUSY)

        self._is_processing = True
        try:
            with run_context(coordinator=self.name, run_id=uuid4().hex[:12]):
                grant = await self._lease.acquire()
                if not grant.acquired:
                    return ScanReport(outcome=ScanOutcome.SKIPPED_LOCKED)

                try:
                    return await self._scan(grant)
                except Exception as exc:
                    logger.error(
                        f"{self.name}: scan aborted",
                        exc_info=True,
                        extra={"error": str(exc)},
                    )
                    return ScanReport(outcome=ScanOutcome.FAILED)
                finally:
                    await self._lease.release(grant.token)
        finally:
            self._is_processing = False

    async def _scan(self, grant: LeaseGrant) -> ScanReport:
        candidates = list(await self._work.select_batch())
        report = ScanReport(outcome=ScanOutcome.COMPLETED, candidates=len(candidates))

        if candidates:
            logger.info(
                f"{self.name}: found {len(candidates)} candidate(s)",
                extra={"count": len(candidates)},
            )

        lease_lost = False
        for index, candidate in enumerate(candidates):
            if index > 0 and grant.token is not None and not lease_lost:
                if not await self._lease.refresh(grant.token):
                    lease_lost = True
                    logger.warning(
                        f"{self.name}: lease lost mid-scan, continuing under claim protection",
                        extra={"lock_key": self._lease.key},
                    )

            await self._process_candidate(candidate, report)

        await self._work.after_batch()
        return report

    async def _process_candidate(self, candidate: UUID, report: ScanReport) -> None:
        candidate_id = self._work.candidate_id(candidate)

        try:
            record = await self._work.claim(candidate)
        except Exception as exc:
            report.failed += 1
            logger.error(
                f"{self.name}: claim failed",
                exc_info=True,
                extra={"candidate_id": candidate_id, "error": str(exc)},
            )
            return

        if record is None:
            report.skipped += 1
            return

        report.claimed += 1
        outcome: Any = None
        error: BaseException | None = None
        try:
            outcome = await self._work.execute(record)
        except Exception as exc:
            error = exc
            report.failed += 1
            logger.error(
                f"{self.name}: error processing candidate",
                exc_info=True,
                extra={"candidate_id": candidate_id, "error": str(exc)},
            )
        finally:
            try:
                await self._work.finalize(record, outcome, error)
            except Exception as exc:
                logger.error(
                    f"{self.name}: failed to write terminal state",
                    exc_info=True,
                    extra={"candidate_id": candidate_id, "error": str(exc)},
                )

    def start(self) -> None:
        """Run one scan now, then every ``interval_seconds``."""
        if self._ticker.running:
            logger.info(f"{self.name}: already running")
            return

        logger.info(
            f"{self.name}: starting (interval: {self._interval}s)",
            extra={"coordinator": self.name},
        )
        self._stopping = False
        self._ticker.start(self._interval, self.run_once)

    async def stop(self) -> None:
        """Cancel future ticks and wait, bounded, for an in-flight scan."""
        if not self._ticker.running:
            return

        self._stopping = True
        self._ticker.cancel()

        if not self._is_processing:
            logger.info(f"{self.name}: stopped")
            return

        logger.info(f"{self.name}: shutdown requested, waiting for in-flight processing")
        waited = 0.0
        while self._is_processing and waited < self._shutdown_wait:
            await asyncio.sleep(self._shutdown_poll)
            waited += self._shutdown_poll

        if self._is_processing:
            logger.warning(
                f"{self.name}: forced shutdown, processing still in progress",
                extra={"waited_seconds": waited},
            )
        else:
            logger.info(
                f"{self.name}: stopped gracefully",
                extra={"waited_seconds": waited},
            )
