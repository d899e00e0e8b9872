"""Administrative operations: retry, resolve, cancel and queue control.

Every action goes through the same compare-and-swap transitions as the
automated paths, so an admin racing a worker or a webhook loses cleanly
(ActionNotAllowedError) instead of overwriting its result.
"""

from typing import Any, Callable

import structlog

from permitflow.models.application import (
    TERMINAL_STATUSES,
    Application,
    ApplicationStatus,
)
from permitflow.models.generation_job import JobPriority
from permitflow.services.exceptions import ActionNotAllowedError, ApplicationNotFoundError
from permitflow.services.queue import JobQueue, QueueStats
from permitflow.uow import UnitOfWork

logger = structlog.get_logger(__name__)

RETRYABLE_STATUSES = (
    ApplicationStatus.ERROR_GENERATING_PERMIT,
    ApplicationStatus.PAYMENT_RECEIVED,
)

# A worker may own the row in these statuses; admins wait for the outcome
_WORKER_OWNED_STATUSES = (ApplicationStatus.PROCESSING_DOCUMENTS,)

_NOT_CANCELLABLE = TERMINAL_STATUSES | set(_WORKER_OWNED_STATUSES)


class AdminService:
    """Operator actions on applications and the generation queue."""

    def __init__(self, uow_factory: Callable, queue: JobQueue):
        self.uow_factory = uow_factory
        self.queue = queue

    async def _require(self, uow: UnitOfWork, application_id: int) -> Application:
        application = await uow.applications.get_by_id(application_id)
        if application is None:
            raise ApplicationNotFoundError(f"Application {application_id} not found")
        return application

    async def retry(self, application_id: int, admin: str = "admin") -> Application:
        """Re-enqueue a failed generation at admin priority.

        An already-scheduled automatic retry job is bumped to admin priority
        and made visible immediately rather than duplicated.

        Raises:
            ApplicationNotFoundError: Application does not exist
            ActionNotAllowedError: No failed generation attempt to retry
        """
        async with await self.uow_factory() as uow:
            application = await self._require(uow, application_id)
            if application.status not in RETRYABLE_STATUSES:
                raise ActionNotAllowedError(
                    f"Application {application_id} has no failed generation to retry "
                    f"(status {application.status.value})"
                )

            queued = await self.queue.enqueue_application(
                uow,
                application_id,
                expected=(application.status,),
                priority=JobPriority.ADMIN,
            )
            if queued is None:
                raise ActionNotAllowedError(
                    f"Application {application_id} changed state, retry not applied"
                )

        logger.info(
            "admin.retry",
            application_id=application_id,
            admin=admin,
            job_id=queued.queue_job_id,
            queue_position=queued.queue_position,
        )
        return queued

    async def resolve(self, application_id: int, notes: str, admin: str = "admin") -> Application:
        """Mark an application as handled by hand, without the worker.

        The status stays as it is; resolution notes and author are recorded and
        any pending generation job is dropped.

        Raises:
            ApplicationNotFoundError: Application does not exist
            ActionNotAllowedError: Application is queued or being processed
        """
        async with await self.uow_factory() as uow:
            application = await self._require(uow, application_id)
            if application.status in (ApplicationStatus.IN_QUEUE, *_WORKER_OWNED_STATUSES):
                raise ActionNotAllowedError(
                    f"Application {application_id} is {application.status.value}; "
                    "cancel it or wait for the attempt to finish"
                )

            resolved = await uow.applications.resolve_manually(
                application_id, application.status, notes=notes, resolved_by=admin
            )
            if resolved is None:
                raise ActionNotAllowedError(
                    f"Application {application_id} changed state, resolution not applied"
                )
            await self.queue.discard(uow, application_id, f"resolved manually by {admin}")

        logger.info(
            "admin.resolved",
            application_id=application_id,
            admin=admin,
            status=resolved.status.value,
        )
        return resolved

    async def cancel(self, application_id: int, admin: str = "admin") -> Application:
        """Cancel a non-terminal application no worker currently owns.

        Raises:
            ApplicationNotFoundError: Application does not exist
            ActionNotAllowedError: Terminal, or a generation attempt is running
        """
        async with await self.uow_factory() as uow:
            application = await self._require(uow, application_id)
            if application.status in _NOT_CANCELLABLE:
                raise ActionNotAllowedError(
                    f"Application {application_id} cannot be cancelled "
                    f"from {application.status.value}"
                )

            cancelled = await uow.applications.cancel(application_id, application.status)
            if cancelled is None:
                raise ActionNotAllowedError(
                    f"Application {application_id} changed state, cancellation not applied"
                )
            await self.queue.discard(uow, application_id, f"cancelled by {admin}")

        logger.info("admin.cancelled", application_id=application_id, admin=admin)
        return cancelled

    async def get_application(self, application_id: int) -> dict[str, Any]:
        """Triage view: lifecycle fields, stored documents and the payment ledger.

        Raises:
            ApplicationNotFoundError: Application does not exist
        """
        async with await self.uow_factory() as uow:
            application = await self._require(uow, application_id)
            events = await uow.payment_events.list_for_application(application_id)
            job = await uow.jobs.get_pending_for_application(application_id)

        return {
            "applicationId": application.id,
            "status": application.status.value,
            "queueStatus": application.queue_status.value if application.queue_status else None,
            "retryCount": application.retry_count,
            "errorCategory": (
                application.error_category.value if application.error_category else None
            ),
            "errorMessage": application.error_message,
            "paymentOrderId": application.payment_order_id,
            "documentsComplete": application.has_all_artifacts,
            "pendingJob": (
                {"jobId": job.id, "status": job.status.value, "attempts": job.attempts}
                if job is not None
                else None
            ),
            "paymentEvents": [
                {
                    "eventType": event.event_type,
                    "orderId": event.order_id,
                    "processorEventId": event.processor_event_id,
                    "createdAt": event.created_at.isoformat(),
                }
                for event in events
            ],
        }

    async def pause_queue(self, admin: str = "admin") -> None:
        async with await self.uow_factory() as uow:
            await self.queue.pause(uow)
        logger.info("admin.queue_paused", admin=admin)

    async def resume_queue(self, admin: str = "admin") -> None:
        async with await self.uow_factory() as uow:
            await self.queue.resume(uow)
        logger.info("admin.queue_resumed", admin=admin)

    async def queue_stats(self) -> dict[str, Any]:
        """Queue counters plus application counts by status."""
        async with await self.uow_factory() as uow:
            stats: QueueStats = await self.queue.stats(uow)
            by_status = await uow.applications.count_by_status()
        return {"queue": stats.as_dict(), "applications": by_status}
