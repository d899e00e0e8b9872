"""Application entity - one permit request and its full lifecycle.

``status`` tracks the business lifecycle; ``queue_status`` tracks the execution
lifecycle of document generation. The two evolve separately but only in the
combinations listed in ``ALLOWED_QUEUE_STATUSES``.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

import sqlalchemy as sa
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from permitflow.core.timezone import utcnow


class ApplicationStatus(str, Enum):
    """Business lifecycle status (stable values, read by reporting and admin UI)."""

    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    AWAITING_OXXO_PAYMENT = "AWAITING_OXXO_PAYMENT"
    PAYMENT_PROCESSING = "PAYMENT_PROCESSING"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    IN_QUEUE = "IN_QUEUE"
    PROCESSING_DOCUMENTS = "PROCESSING_DOCUMENTS"
    PERMIT_READY = "PERMIT_READY"
    ERROR_GENERATING_PERMIT = "ERROR_GENERATING_PERMIT"
    EXPIRED = "EXPIRED"
    VENCIDO = "VENCIDO"
    CANCELLED = "CANCELLED"


class QueueStatus(str, Enum):
    """Execution lifecycle of the current generation attempt."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ErrorCategory(str, Enum):
    """Category of a failed generation attempt."""

    TIMEOUT = "TIMEOUT"
    AUTH_FAILURE = "AUTH_FAILURE"
    PORTAL_CHANGED = "PORTAL_CHANGED"
    UNKNOWN = "UNKNOWN"


class InvalidStateTransition(Exception):
    """Raised when a transition is not part of the application state graph."""

    pass


# Statuses that never re-enter the queue on their own.
TERMINAL_STATUSES = frozenset(
    {
        ApplicationStatus.PERMIT_READY,
        ApplicationStatus.EXPIRED,
        ApplicationStatus.VENCIDO,
        ApplicationStatus.CANCELLED,
    }
)

# Statuses from which a worker may start a generation attempt.
PRE_GENERATION_STATUSES = frozenset(
    {ApplicationStatus.IN_QUEUE, ApplicationStatus.ERROR_GENERATING_PERMIT}
)

# Statuses that may be renewed into a fresh application row.
RENEWABLE_STATUSES = frozenset(
    {ApplicationStatus.PERMIT_READY, ApplicationStatus.EXPIRED, ApplicationStatus.VENCIDO}
)

_PAYMENT_PHASE_STATUSES = (
    ApplicationStatus.AWAITING_PAYMENT,
    ApplicationStatus.AWAITING_OXXO_PAYMENT,
    ApplicationStatus.PAYMENT_PROCESSING,
    ApplicationStatus.PAYMENT_FAILED,
    ApplicationStatus.PAYMENT_RECEIVED,
)

ALLOWED_QUEUE_STATUSES: dict[ApplicationStatus, frozenset[Optional[QueueStatus]]] = {
    **{status: frozenset({None}) for status in _PAYMENT_PHASE_STATUSES},
    ApplicationStatus.IN_QUEUE: frozenset({QueueStatus.QUEUED}),
    ApplicationStatus.PROCESSING_DOCUMENTS: frozenset({QueueStatus.PROCESSING}),
    ApplicationStatus.ERROR_GENERATING_PERMIT: frozenset({QueueStatus.FAILED}),
    ApplicationStatus.PERMIT_READY: frozenset({QueueStatus.COMPLETED}),
    ApplicationStatus.EXPIRED: frozenset({None, QueueStatus.COMPLETED}),
    ApplicationStatus.VENCIDO: frozenset({None, QueueStatus.COMPLETED}),
    ApplicationStatus.CANCELLED: frozenset({None, QueueStatus.FAILED}),
}

# Self-transitions are always allowed (field-only updates inside one status).
ALLOWED_TRANSITIONS: dict[ApplicationStatus, frozenset[ApplicationStatus]] = {
    ApplicationStatus.AWAITING_PAYMENT: frozenset(
        {
            ApplicationStatus.PAYMENT_PROCESSING,
            ApplicationStatus.PAYMENT_RECEIVED,
            ApplicationStatus.PAYMENT_FAILED,
            ApplicationStatus.AWAITING_OXXO_PAYMENT,
            ApplicationStatus.EXPIRED,
            ApplicationStatus.CANCELLED,
        }
    ),
    ApplicationStatus.AWAITING_OXXO_PAYMENT: frozenset(
        {
            ApplicationStatus.PAYMENT_PROCESSING,
            ApplicationStatus.PAYMENT_RECEIVED,
            ApplicationStatus.PAYMENT_FAILED,
            ApplicationStatus.EXPIRED,
            ApplicationStatus.CANCELLED,
        }
    ),
    ApplicationStatus.PAYMENT_PROCESSING: frozenset(
        {
            ApplicationStatus.PAYMENT_RECEIVED,
            ApplicationStatus.PAYMENT_FAILED,
            ApplicationStatus.AWAITING_OXXO_PAYMENT,
            ApplicationStatus.CANCELLED,
        }
    ),
    ApplicationStatus.PAYMENT_FAILED: frozenset(
        {
            ApplicationStatus.AWAITING_PAYMENT,  # user reopens checkout
            ApplicationStatus.AWAITING_OXXO_PAYMENT,
            ApplicationStatus.PAYMENT_PROCESSING,
            ApplicationStatus.PAYMENT_RECEIVED,  # late success of the same order
            ApplicationStatus.CANCELLED,
        }
    ),
    ApplicationStatus.PAYMENT_RECEIVED: frozenset(
        {ApplicationStatus.IN_QUEUE, ApplicationStatus.CANCELLED}
    ),
    ApplicationStatus.IN_QUEUE: frozenset(
        {
            ApplicationStatus.PROCESSING_DOCUMENTS,
            ApplicationStatus.ERROR_GENERATING_PERMIT,  # job stalled past its attempt limit
            ApplicationStatus.CANCELLED,
        }
    ),
    ApplicationStatus.PROCESSING_DOCUMENTS: frozenset(
        {
            ApplicationStatus.PERMIT_READY,
            ApplicationStatus.ERROR_GENERATING_PERMIT,
            ApplicationStatus.IN_QUEUE,  # orphaned attempt reset by the recovery sweep
        }
    ),
    ApplicationStatus.ERROR_GENERATING_PERMIT: frozenset(
        {
            ApplicationStatus.PROCESSING_DOCUMENTS,
            ApplicationStatus.IN_QUEUE,
            ApplicationStatus.CANCELLED,
        }
    ),
    ApplicationStatus.PERMIT_READY: frozenset(
        {ApplicationStatus.EXPIRED, ApplicationStatus.VENCIDO}
    ),
    ApplicationStatus.EXPIRED: frozenset(),
    ApplicationStatus.VENCIDO: frozenset(),
    ApplicationStatus.CANCELLED: frozenset(),
}


def can_transition(from_status: ApplicationStatus, to_status: ApplicationStatus) -> bool:
    """Return True if the state graph allows ``from_status`` -> ``to_status``."""
    if from_status == to_status:
        return True
    return to_status in ALLOWED_TRANSITIONS[from_status]


def is_valid_combination(status: ApplicationStatus, queue_status: Optional[QueueStatus]) -> bool:
    """Return True if ``queue_status`` may accompany ``status``."""
    return queue_status in ALLOWED_QUEUE_STATUSES[status]


def enum_column(enum_cls: type[Enum]) -> sa.Enum:
    """Column type storing enum *values* (not member names) as VARCHAR."""
    return sa.Enum(
        enum_cls,
        values_callable=lambda members: [member.value for member in members],
        native_enum=False,
        validate_strings=True,
        length=32,
    )


class Application(SQLModel, table=True):
    """Application represents one user's permit request and its lifecycle."""

    __tablename__ = "applications"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[int] = Field(default=None, index=True)
    status: ApplicationStatus = Field(
        default=ApplicationStatus.AWAITING_PAYMENT,
        sa_type=enum_column(ApplicationStatus),
        index=True,
    )
    applicant_data: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow, index=True)
    expires_at: Optional[datetime] = Field(default=None)

    # Queue fields
    queue_status: Optional[QueueStatus] = Field(
        default=None, sa_type=enum_column(QueueStatus), index=True
    )
    queue_position: Optional[int] = Field(default=None)
    queue_entered_at: Optional[datetime] = Field(default=None)
    queue_started_at: Optional[datetime] = Field(default=None)
    queue_completed_at: Optional[datetime] = Field(default=None)
    queue_duration: Optional[int] = Field(default=None)  # milliseconds
    queue_job_id: Optional[int] = Field(default=None)
    queue_error: Optional[str] = Field(default=None, max_length=1000)

    # Generation-failure diagnostics
    error_message: Optional[str] = Field(default=None, max_length=1000)
    error_category: Optional[ErrorCategory] = Field(
        default=None, sa_type=enum_column(ErrorCategory)
    )
    error_at: Optional[datetime] = Field(default=None)
    screenshot_path: Optional[str] = Field(default=None, max_length=500)
    retry_count: int = Field(default=0, ge=0)

    # Payment linkage
    payment_order_id: Optional[str] = Field(default=None, max_length=255, index=True)
    payment_reference: Optional[str] = Field(default=None, max_length=255)
    amount: Optional[Decimal] = Field(default=None, max_digits=10, decimal_places=2)

    # Output artifacts
    permit_file_path: Optional[str] = Field(default=None, max_length=500)
    receipt_file_path: Optional[str] = Field(default=None, max_length=500)
    certificate_file_path: Optional[str] = Field(default=None, max_length=500)
    plate_file_path: Optional[str] = Field(default=None, max_length=500)
    folio: Optional[str] = Field(default=None, max_length=100)
    issued_at: Optional[datetime] = Field(default=None)
    permit_expires_at: Optional[datetime] = Field(default=None, index=True)

    # Admin resolution
    resolution_notes: Optional[str] = Field(default=None)
    resolved_by: Optional[str] = Field(default=None, max_length=255)
    resolved_at: Optional[datetime] = Field(default=None)

    # Renewal lineage
    renewed_from_id: Optional[int] = Field(default=None, foreign_key="applications.id")
    renewal_count: int = Field(default=0, ge=0)

    @property
    def has_all_artifacts(self) -> bool:
        """True when all four output documents are stored."""
        return all(
            (
                self.permit_file_path,
                self.receipt_file_path,
                self.certificate_file_path,
                self.plate_file_path,
            )
        )
