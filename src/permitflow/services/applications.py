"""Application lifecycle operations driven by users (submit, renew, pay, track)."""

from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable, Optional

import structlog

from permitflow.core.timezone import utcnow
from permitflow.models.application import (
    RENEWABLE_STATUSES,
    Application,
    ApplicationStatus,
)
from permitflow.services.exceptions import ActionNotAllowedError, ApplicationNotFoundError
from permitflow.services.payments.transitions import apply_payment_processing
from permitflow.services.queue import JobQueue

logger = structlog.get_logger(__name__)

# Coarse progress shown to users while an application waits for its documents
PROGRESS_BY_STATUS = {
    ApplicationStatus.IN_QUEUE: 25,
    ApplicationStatus.PROCESSING_DOCUMENTS: 60,
}

_IN_QUEUE_STATUSES = (ApplicationStatus.IN_QUEUE, ApplicationStatus.PROCESSING_DOCUMENTS)


class ApplicationService:
    """User-facing application operations."""

    def __init__(self, uow_factory: Callable, queue: JobQueue, payment_window_hours: int = 72):
        self.uow_factory = uow_factory
        self.queue = queue
        self.payment_window = timedelta(hours=payment_window_hours)

    async def submit(
        self,
        user_id: Optional[int],
        applicant_data: dict[str, Any],
        amount: Optional[Decimal] = None,
    ) -> Application:
        """Create a new application waiting for payment.

        Args:
            user_id: Owner of the application
            applicant_data: Applicant and vehicle details passed to generation
            amount: Permit price

        Returns:
            Persisted application in AWAITING_PAYMENT
        """
        async with await self.uow_factory() as uow:
            application = await uow.applications.add(
                Application(
                    user_id=user_id,
                    applicant_data=applicant_data,
                    amount=amount,
                    expires_at=utcnow() + self.payment_window,
                )
            )
        logger.info("application.submitted", application_id=application.id, user_id=user_id)
        return application

    async def renew(self, application_id: int) -> Application:
        """Create a fresh application from a finished one.

        The source row is not modified; the new row links back to it.

        Raises:
            ApplicationNotFoundError: Source application does not exist
            ActionNotAllowedError: Source is not in a renewable status
        """
        async with await self.uow_factory() as uow:
            source = await uow.applications.get_by_id(application_id)
            if source is None:
                raise ApplicationNotFoundError(f"Application {application_id} not found")
            if source.status not in RENEWABLE_STATUSES:
                raise ActionNotAllowedError(
                    f"Application {application_id} cannot be renewed from {source.status.value}"
                )

            renewal = await uow.applications.add(
                Application(
                    user_id=source.user_id,
                    applicant_data=dict(source.applicant_data),
                    amount=source.amount,
                    expires_at=utcnow() + self.payment_window,
                    renewed_from_id=source.id,
                    renewal_count=source.renewal_count + 1,
                )
            )

        logger.info(
            "application.renewed",
            application_id=renewal.id,
            renewed_from_id=application_id,
            renewal_count=renewal.renewal_count,
        )
        return renewal

    async def start_payment(self, application_id: int, order_id: str) -> Application | None:
        """Record that a payment was started at the processor.

        A declined application accepts a new order here directly.

        Returns:
            Updated application, or None if it was no longer payable
        """
        async with await self.uow_factory() as uow:
            if await uow.applications.get_by_id(application_id) is None:
                raise ApplicationNotFoundError(f"Application {application_id} not found")
            return await apply_payment_processing(uow, application_id, order_id)

    async def retry_payment(self, application_id: int) -> Application:
        """Reopen checkout for a declined payment with a fresh payment window.

        Raises:
            ApplicationNotFoundError: Application does not exist
            ActionNotAllowedError: Payment is not in PAYMENT_FAILED
        """
        async with await self.uow_factory() as uow:
            application = await uow.applications.get_by_id(application_id)
            if application is None:
                raise ApplicationNotFoundError(f"Application {application_id} not found")

            reopened = await uow.applications.reopen_payment(
                application_id, expires_at=utcnow() + self.payment_window
            )
            if reopened is None:
                raise ActionNotAllowedError(
                    f"Application {application_id} has no declined payment to retry "
                    f"(status {application.status.value})"
                )

        logger.info(
            "application.payment_reopened",
            application_id=application_id,
            previous_order_id=application.payment_order_id,
        )
        return reopened

    async def get_queue_status(self, application_id: int) -> dict[str, Any]:
        """Queue position and wait estimate of one application.

        Returns:
            ``{inQueue, position, estimatedWaitTime, status, progress, retryCount}``
            while queued or processing, ``{inQueue: False, status}`` otherwise

        Raises:
            ApplicationNotFoundError: Application does not exist
        """
        async with await self.uow_factory() as uow:
            application = await uow.applications.get_by_id(application_id)
            if application is None:
                raise ApplicationNotFoundError(f"Application {application_id} not found")

            if application.status not in _IN_QUEUE_STATUSES:
                return {
                    "inQueue": False,
                    "status": application.status.value,
                    "retryCount": application.retry_count,
                }

            position = 0
            job = await uow.jobs.get_pending_for_application(application_id)
            if job is not None:
                position = await self.queue.position_of(uow, job)
            elif application.queue_position is not None:
                position = application.queue_position

            return {
                "inQueue": True,
                "position": position,
                "estimatedWaitTime": await self.queue.estimate_wait_seconds(uow, position),
                "status": application.status.value,
                "progress": PROGRESS_BY_STATUS.get(application.status, 0),
                "retryCount": application.retry_count,
            }
