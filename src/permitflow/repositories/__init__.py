"""Repository layer for permitflow.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from permitflow.repositories.application import ApplicationRepository
from permitflow.repositories.generation_job import GenerationJobRepository
from permitflow.repositories.payment_event import PaymentEventRepository
from permitflow.repositories.recovery_attempt import RecoveryAttemptRepository
from permitflow.repositories.system_state import SystemStateRepository
from permitflow.repositories.webhook_receipt import WebhookReceiptRepository

__all__ = [
    "ApplicationRepository",
    "GenerationJobRepository",
    "PaymentEventRepository",
    "RecoveryAttemptRepository",
    "SystemStateRepository",
    "WebhookReceiptRepository",
]
