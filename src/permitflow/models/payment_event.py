"""PaymentEvent entity - Append-only ledger of payment processor events."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from permitflow.core.timezone import utcnow

VOUCHER_EXPIRED_EVENT = "voucher.expired"


class PaymentEvent(SQLModel, table=True):
    """PaymentEvent records one processor notification for audit and voucher metadata.

    Rows are never updated after insert.
    """

    __tablename__ = "payment_events"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    application_id: Optional[int] = Field(default=None, foreign_key="applications.id", index=True)
    event_type: str = Field(max_length=100, index=True)
    order_id: Optional[str] = Field(default=None, max_length=255, index=True)
    processor_event_id: Optional[str] = Field(default=None, max_length=255)
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def voucher_expires_at(self) -> Optional[datetime]:
        """Voucher expiry carried in the payload, if any (unix seconds or ISO string)."""
        value = self.payload.get("voucherExpiresAt")
        if value is None:
            return None
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
