"""PaymentEvent repository for permitflow.

Append-only: there is no update or delete method.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from permitflow.models.payment_event import PaymentEvent


class PaymentEventRepository:
    """Repository for the payment event ledger."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def append(self, event: PaymentEvent) -> PaymentEvent:
        """Persist a new payment event.

        Args:
            event: PaymentEvent entity to persist

        Returns:
            Persisted event with generated ID
        """
        self.session.add(event)
        await self.session.flush()
        return event

    async def list_for_application(self, application_id: int) -> list[PaymentEvent]:
        """Retrieve all events of an application, oldest first."""
        result = await self.session.execute(
            select(PaymentEvent)
            .where(PaymentEvent.application_id == application_id)  # type: ignore[arg-type]
            .order_by(PaymentEvent.created_at.asc(), PaymentEvent.id.asc())  # type: ignore[attr-defined,union-attr]
        )
        return list(result.scalars().all())

    async def get_latest_voucher(self, application_id: int) -> PaymentEvent | None:
        """Most recent event that carries voucher metadata.

        Voucher reference, expiry and URL exist only in event payloads.
        """
        result = await self.session.execute(
            select(PaymentEvent)
            .where(
                PaymentEvent.application_id == application_id,  # type: ignore[arg-type]
                PaymentEvent.payload["voucherReference"].as_string().is_not(None),  # type: ignore[index]
            )
            .order_by(PaymentEvent.created_at.desc(), PaymentEvent.id.desc())  # type: ignore[attr-defined,union-attr]
            .limit(1)
        )
        return result.scalar_one_or_none()
