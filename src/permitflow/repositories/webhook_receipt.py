"""WebhookReceipt repository for permitflow."""

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from permitflow.core.timezone import utcnow
from permitflow.models.webhook_receipt import WebhookReceipt


class WebhookReceiptRepository:
    """Repository for the webhook dedup ledger."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def insert_if_absent(self, event_id: str, event_type: str) -> bool:
        """Record an event id unless it is already present.

        Uses INSERT ... ON CONFLICT DO NOTHING RETURNING, so of two concurrent
        deliveries of the same id exactly one sees True. The loser blocks on the
        winner's uncommitted row and then gets False.

        Args:
            event_id: Processor's unique event identifier
            event_type: Processor event type (for audit)

        Returns:
            True if this call inserted the row, False if it already existed
        """
        stmt = (
            insert(WebhookReceipt)
            .values(event_id=event_id, event_type=event_type, received_at=utcnow())
            .on_conflict_do_nothing(index_elements=["event_id"])
            .returning(WebhookReceipt.event_id)  # type: ignore[arg-type]
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None
