"""Atomic claim-then-process over persisted records.

A record leaves its claimable status only through a conditional update
(``UPDATE ... WHERE id = :id AND status = :claimable``). Exactly one runner
sees ``rowcount == 1``; every other runner abandons the record silently. This
holds whether or not the distributed lease is held, which is what makes it
safe to run a coordinator unlocked when Redis is down.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, AsyncContextManager, Callable, Generic, Sequence, TypeVar
from uuid import UUID

import sqlalchemy as sa
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from loam.database.database import sessionmanager
from loam.main.logging import get_logger

logger = get_logger(__name__)

R = TypeVar("R", bound=BaseModel)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


def _status_value(status: str | Enum) -> str:
    return status.value if isinstance(status, Enum) else status


class ClaimableJobStore(Generic[R]):
    """Claim/terminal-write access to one table with a ``status`` column.

    Records handed out are pydantic models built inside the session, so no
    ORM instance outlives its transaction.

    Args:
        table: Mapped table class with ``id``, ``status`` and ``updated_at``.
        record_model: Pydantic model validated from the ORM row.
        claimable_status: Status a record must be in to be claimed.
        claimed_status: Status written by a successful claim.
        session_factory: Async context manager factory yielding a session.
            Defaults to the process-wide session manager.
    """

    def __init__(
        self,
        table: Any,
        record_model: type[R],
        *,
        claimable_status: str | Enum,
        claimed_status: str | Enum,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self._table = table
        self._record_model = record_model
        self._claimable = _status_value(claimable_status)
        self._claimed = _status_value(claimed_status)
        self._session_factory = session_factory or sessionmanager.session

    @property
    def table(self) -> Any:
        return self._table

    def _to_record(self, row: Any) -> R:
        return self._record_model.model_validate(row, from_attributes=True)

    async def _fetch(self, session: AsyncSession, record_id: UUID) -> R | None:
        row = await session.scalar(sa.select(self._table).where(self._table.id == record_id))
        if row is None:
            return None
        return self._to_record(row)

    async def claim(self, record_id: UUID, **extra_values: Any) -> R | None:
        """Move one record from the claimable to the claimed status.

        ``extra_values`` are written in the same statement (e.g. a completion
        timestamp when the claim is itself the terminal transition).

        Returns:
            The claimed record, or None if another runner won or the record
            disappeared between claim and read.
        """
        values = {"status": self._claimed, "updated_at": sa.func.now(), **extra_values}
        stmt = (
            sa.update(self._table)
            .where(self._table.id == record_id)
            .where(self._table.status == self._claimable)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
            if result.rowcount != 1:
                logger.debug(
                    "Record already claimed by another runner",
                    extra={"candidate_id": str(record_id), "table": self._table.__tablename__},
                )
                return None

            record = await self._fetch(session, record_id)

        if record is None:
            logger.info(
                "Claimed record vanished before it could be read",
                extra={"candidate_id": str(record_id), "table": self._table.__tablename__},
            )
        return record

    async def mark_terminal(self, record_id: UUID, status: str | Enum, **values: Any) -> bool:
        """Write the final status. Only the runner that won the claim calls this.

        Returns:
            True if the record still existed and was updated.
        """
        stmt = (
            sa.update(self._table)
            .where(self._table.id == record_id)
            .values(status=_status_value(status), updated_at=sa.func.now(), **values)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
        return result.rowcount > 0

    async def candidate_ids(
        self,
        *conditions: Any,
        order_by: Any = None,
        limit: int | None = None,
    ) -> list[UUID]:
        """Ids of claimable records matching ``conditions``, in ``order_by`` order."""
        stmt = sa.select(self._table.id).where(self._table.status == self._claimable, *conditions)
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._session_factory() as session, session.begin():
            ids: Sequence[UUID] = (await session.scalars(stmt)).all()
        return list(ids)

    async def bulk_transition(self, *conditions: Any, status: str | Enum, **values: Any) -> int:
        """Move every claimable record matching ``conditions`` to ``status``.

        Returns:
            Number of records transitioned.
        """
        stmt = (
            sa.update(self._table)
            .where(self._table.status == self._claimable, *conditions)
            .values(status=_status_value(status), updated_at=sa.func.now(), **values)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
        return result.rowcount
