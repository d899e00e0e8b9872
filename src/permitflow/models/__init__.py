"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from permitflow.models.application import (
    Application,
    ApplicationStatus,
    ErrorCategory,
    InvalidStateTransition,
    QueueStatus,
)
from permitflow.models.generation_job import GenerationJob, JobPriority, JobStatus
from permitflow.models.payment_event import PaymentEvent
from permitflow.models.recovery_attempt import RecoveryAttempt, RecoveryStatus
from permitflow.models.system_state import SystemState
from permitflow.models.webhook_receipt import WebhookReceipt

__all__ = [
    "Application",
    "ApplicationStatus",
    "QueueStatus",
    "ErrorCategory",
    "InvalidStateTransition",
    "GenerationJob",
    "JobPriority",
    "JobStatus",
    "PaymentEvent",
    "RecoveryAttempt",
    "RecoveryStatus",
    "SystemState",
    "WebhookReceipt",
]
