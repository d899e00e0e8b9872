"""GenerationJob entity - Durable document generation work queue."""

from datetime import datetime
from enum import Enum, IntEnum
from typing import Optional

from sqlmodel import Field, SQLModel

from permitflow.core.timezone import utcnow
from permitflow.models.application import enum_column


class JobPriority(IntEnum):
    """Higher values are claimed first."""

    NORMAL = 0
    RETRY = 1
    ADMIN = 2
    CRITICAL = 3


class JobStatus(str, Enum):
    """Job lifecycle inside the queue."""

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


PENDING_JOB_STATUSES = (JobStatus.QUEUED, JobStatus.ACTIVE)


class GenerationJob(SQLModel, table=True):
    """GenerationJob is one request to run document generation for an application."""

    __tablename__ = "generation_jobs"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    application_id: int = Field(foreign_key="applications.id", index=True)
    priority: int = Field(default=JobPriority.NORMAL, ge=0, le=3)
    status: JobStatus = Field(
        default=JobStatus.QUEUED, sa_type=enum_column(JobStatus), index=True
    )
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    available_at: datetime = Field(default_factory=utcnow, index=True)
    leased_until: Optional[datetime] = Field(default=None)
    worker_id: Optional[str] = Field(default=None, max_length=100)
    last_error: Optional[str] = Field(default=None, max_length=1000)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = Field(default=None)
    finished_at: Optional[datetime] = Field(default=None)
