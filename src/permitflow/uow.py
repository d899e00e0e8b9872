"""Transaction boundary shared by the webhook handler, the workers and the scheduler."""

from typing import Awaitable, Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from permitflow.repositories.application import ApplicationRepository
from permitflow.repositories.generation_job import GenerationJobRepository
from permitflow.repositories.payment_event import PaymentEventRepository
from permitflow.repositories.recovery_attempt import RecoveryAttemptRepository
from permitflow.repositories.system_state import SystemStateRepository
from permitflow.repositories.webhook_receipt import WebhookReceiptRepository

logger = structlog.get_logger()


class UnitOfWork:
    """One database transaction plus the repositories that run inside it.

    Everything done through one UnitOfWork commits or rolls back together, so
    a webhook receipt, its ledger row, the status change and the enqueued job
    are never persisted partially::

        async with await uow_factory() as uow:
            await uow.webhook_receipts.insert_if_absent(event_id, event_type)
            await apply_payment_succeeded(uow, queue, application_id, order_id)

    Exceptions are re-raised after the rollback.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

        self.applications = ApplicationRepository(session)
        self.jobs = GenerationJobRepository(session)
        self.payment_events = PaymentEventRepository(session)
        self.webhook_receipts = WebhookReceiptRepository(session)
        self.recovery_attempts = RecoveryAttemptRepository(session)
        self.system_state = SystemStateRepository(session)

    async def __aenter__(self) -> "UnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        try:
            if exc_type is None:
                await self.session.commit()
            else:
                await self.session.rollback()
                logger.debug("uow.rolled_back", exc_type=exc_type.__name__)
        finally:
            # Returns the connection to the pool before the next poll
            await self.session.close()
        return False


UowFactory = Callable[[], Awaitable[UnitOfWork]]


def create_uow_factory(session_factory: async_sessionmaker[AsyncSession]) -> UowFactory:
    """Build the ``await uow_factory()`` callable used across services and workers."""

    async def _create_uow() -> UnitOfWork:
        return UnitOfWork(session_factory())

    return _create_uow
