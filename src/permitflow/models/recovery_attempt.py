"""RecoveryAttempt entity - Bounded payment reconciliation bookkeeping."""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from permitflow.core.timezone import utcnow
from permitflow.models.application import enum_column


class RecoveryStatus(str, Enum):
    """Recovery attempt lifecycle."""

    PENDING = "pending"
    RECOVERING = "recovering"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    MAX_ATTEMPTS_REACHED = "max_attempts_reached"


OPEN_RECOVERY_STATUSES = (RecoveryStatus.PENDING, RecoveryStatus.RECOVERING)


class RecoveryAttempt(SQLModel, table=True):
    """RecoveryAttempt tracks re-query retries for one (application, payment intent) pair.

    Kept separate from the Application row so the bookkeeping survives a failed
    transition on the application itself.
    """

    __tablename__ = "recovery_attempts"  # type: ignore[assignment]
    __table_args__ = (
        UniqueConstraint("application_id", "payment_intent_id", name="uq_recovery_app_intent"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    application_id: int = Field(foreign_key="applications.id", index=True)
    payment_intent_id: str = Field(max_length=255)
    attempt_count: int = Field(default=0, ge=0)
    last_attempt_time: Optional[datetime] = Field(default=None)
    last_error: Optional[str] = Field(default=None, max_length=1000)
    recovery_status: RecoveryStatus = Field(
        default=RecoveryStatus.PENDING, sa_type=enum_column(RecoveryStatus), index=True
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
