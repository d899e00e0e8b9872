"""RecoveryAttempt repository for permitflow.

All counters are changed with INSERT ... ON CONFLICT DO UPDATE so concurrent
sweeps increment instead of overwriting each other.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from permitflow.core.timezone import utcnow
from permitflow.models.recovery_attempt import (
    OPEN_RECOVERY_STATUSES,
    RecoveryAttempt,
    RecoveryStatus,
)

_table = RecoveryAttempt.__table__  # type: ignore[attr-defined]


class RecoveryAttemptRepository:
    """Repository for payment recovery bookkeeping."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get(self, application_id: int, payment_intent_id: str) -> RecoveryAttempt | None:
        result = await self.session.execute(
            select(RecoveryAttempt).where(
                RecoveryAttempt.application_id == application_id,  # type: ignore[arg-type]
                RecoveryAttempt.payment_intent_id == payment_intent_id,  # type: ignore[arg-type]
            )
        )
        return result.scalar_one_or_none()

    async def seed_pending(
        self, application_id: int, payment_intent_id: str, last_error: Optional[str] = None
    ) -> bool:
        """Create a pending attempt unless one exists for the pair.

        An existing row keeps its counters; only ``last_error`` is refreshed when
        given.

        Returns:
            True if a new row was inserted
        """
        now = utcnow()
        stmt = insert(RecoveryAttempt).values(
            application_id=application_id,
            payment_intent_id=payment_intent_id,
            attempt_count=0,
            last_error=last_error[:1000] if last_error else None,
            recovery_status=RecoveryStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_nothing(
            index_elements=["application_id", "payment_intent_id"]
        ).returning(RecoveryAttempt.id)  # type: ignore[arg-type]
        result = await self.session.execute(stmt)
        inserted = result.scalar_one_or_none() is not None

        if not inserted and last_error is not None:
            await self.session.execute(
                update(RecoveryAttempt)
                .where(
                    RecoveryAttempt.application_id == application_id,  # type: ignore[arg-type]
                    RecoveryAttempt.payment_intent_id == payment_intent_id,  # type: ignore[arg-type]
                )
                .values(last_error=last_error[:1000], updated_at=now)
            )
        return inserted

    async def record_attempt(self, application_id: int, payment_intent_id: str) -> RecoveryAttempt:
        """Atomically increment ``attempt_count`` and mark the row recovering.

        Query explanation:
        - INSERT with attempt_count=1 if the pair is new
        - ON CONFLICT: attempt_count = attempt_count + 1 on the existing row

        Returns:
            The attempt row after the increment
        """
        now = utcnow()
        stmt = (
            insert(RecoveryAttempt)
            .values(
                application_id=application_id,
                payment_intent_id=payment_intent_id,
                attempt_count=1,
                last_attempt_time=now,
                recovery_status=RecoveryStatus.RECOVERING,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_update(
                index_elements=["application_id", "payment_intent_id"],
                set_={
                    "attempt_count": _table.c.attempt_count + 1,
                    "last_attempt_time": now,
                    "recovery_status": RecoveryStatus.RECOVERING,
                    "updated_at": now,
                },
            )
            .returning(RecoveryAttempt)
        )
        result = await self.session.execute(
            stmt, execution_options={"populate_existing": True}
        )
        return result.scalar_one()

    async def set_status(
        self, attempt_id: int, status: RecoveryStatus, last_error: Optional[str] = None
    ) -> None:
        values: dict = {"recovery_status": status, "updated_at": utcnow()}
        if last_error is not None:
            values["last_error"] = last_error[:1000]
        await self.session.execute(
            update(RecoveryAttempt)
            .where(RecoveryAttempt.id == attempt_id)  # type: ignore[arg-type]
            .values(**values)
        )

    async def find_due(
        self, stale_before: datetime, max_attempts: int, limit: int
    ) -> list[RecoveryAttempt]:
        """Open attempts not touched since ``stale_before`` and below the ceiling.

        Args:
            stale_before: Only rows whose last attempt (or creation) is older
            max_attempts: Attempt ceiling
            limit: Batch size

        Returns:
            Attempts ordered oldest first
        """
        last_touched = func.coalesce(RecoveryAttempt.last_attempt_time, RecoveryAttempt.created_at)
        result = await self.session.execute(
            select(RecoveryAttempt)
            .where(
                RecoveryAttempt.recovery_status.in_(OPEN_RECOVERY_STATUSES),  # type: ignore[attr-defined]
                RecoveryAttempt.attempt_count < max_attempts,  # type: ignore[operator]
                last_touched < stale_before,
            )
            .order_by(last_touched.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_exhausted(self, max_attempts: int, limit: int) -> list[RecoveryAttempt]:
        """Open attempts that already reached the ceiling."""
        result = await self.session.execute(
            select(RecoveryAttempt)
            .where(
                RecoveryAttempt.recovery_status.in_(OPEN_RECOVERY_STATUSES),  # type: ignore[attr-defined]
                RecoveryAttempt.attempt_count >= max_attempts,  # type: ignore[operator]
            )
            .limit(limit)
        )
        return list(result.scalars().all())

    async def purge_finished(self, older_than: datetime) -> int:
        """Delete terminal attempts last updated before ``older_than``.

        Returns:
            Number of rows deleted
        """
        result = await self.session.execute(
            delete(RecoveryAttempt).where(
                RecoveryAttempt.recovery_status.not_in(OPEN_RECOVERY_STATUSES),  # type: ignore[attr-defined]
                RecoveryAttempt.updated_at < older_than,  # type: ignore[operator]
            )
        )
        return result.rowcount  # type: ignore[attr-defined]
