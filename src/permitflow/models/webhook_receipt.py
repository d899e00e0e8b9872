"""WebhookReceipt entity - Dedup ledger of processed webhook event ids."""

from datetime import datetime

from sqlmodel import Field, SQLModel

from permitflow.core.timezone import utcnow


class WebhookReceipt(SQLModel, table=True):
    """Existence of a row means the event id has already been applied."""

    __tablename__ = "webhook_receipts"  # type: ignore[assignment]

    event_id: str = Field(primary_key=True, max_length=255)
    event_type: str = Field(max_length=100)
    received_at: datetime = Field(default_factory=utcnow)
