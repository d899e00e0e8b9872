"""Cross-process operational flags."""

from datetime import datetime

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from permitflow.core.timezone import utcnow

# Set by admin pause; generation workers stop claiming while it is enabled
QUEUE_PAUSED_KEY = "queue_paused"


class SystemState(SQLModel, table=True):
    __tablename__ = "system_state"  # type: ignore[assignment]

    key: str = Field(primary_key=True, max_length=255)
    state_value: dict = Field(default_factory=dict, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=utcnow)
