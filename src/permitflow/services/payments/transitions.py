"""Payment-driven application transitions.

Shared by webhook ingestion and the payment-recovery sweep so both paths apply
exactly the same state changes. Each function runs inside the caller's unit of
work and returns the updated application, or None on a compare-and-swap miss
(the application already moved on; logged, not raised).
"""

from typing import Optional

import structlog

from permitflow.models.application import Application
from permitflow.services.queue import JobQueue
from permitflow.uow import UnitOfWork

logger = structlog.get_logger(__name__)


async def _log_conflict(uow: UnitOfWork, action: str, application_id: int) -> None:
    current = await uow.applications.get_by_id(application_id)
    logger.info(
        "payment.transition.conflict",
        action=action,
        application_id=application_id,
        current_status=current.status.value if current else None,
    )


async def apply_payment_succeeded(
    uow: UnitOfWork,
    queue: JobQueue,
    application_id: int,
    order_id: Optional[str] = None,
) -> Application | None:
    """Payable status (or PAYMENT_FAILED of the same order) -> PAYMENT_RECEIVED -> IN_QUEUE.

    The enqueue happens in the same transaction as the status change.
    """
    received = await uow.applications.mark_payment_received(application_id, order_id)
    if received is None:
        await _log_conflict(uow, "payment_succeeded", application_id)
        return None

    logger.info("payment.received", application_id=application_id, order_id=order_id)

    queued = await queue.enqueue_application(uow, application_id)
    if queued is None:
        await _log_conflict(uow, "enqueue", application_id)
        return received

    logger.info(
        "application.queued",
        application_id=application_id,
        job_id=queued.queue_job_id,
        queue_position=queued.queue_position,
    )
    return queued


async def apply_payment_failed(
    uow: UnitOfWork, application_id: int, order_id: Optional[str] = None
) -> Application | None:
    """Payment declined or cancelled -> PAYMENT_FAILED (no enqueue).

    A decline of an order the application no longer uses is ignored.
    """
    application = await uow.applications.mark_payment_failed(application_id, order_id)
    if application is None:
        await _log_conflict(uow, "payment_failed", application_id)
        return None
    logger.info("payment.failed", application_id=application_id, order_id=order_id)
    return application


async def apply_voucher_created(
    uow: UnitOfWork,
    application_id: int,
    order_id: Optional[str],
    reference: Optional[str],
) -> Application | None:
    """Cash voucher issued -> AWAITING_OXXO_PAYMENT.

    Seeds a recovery attempt so a lost "paid" notification is reconciled.
    """
    application = await uow.applications.mark_awaiting_voucher(application_id, order_id, reference)
    if application is None:
        await _log_conflict(uow, "voucher_created", application_id)
        return None
    if application.payment_order_id:
        await uow.recovery_attempts.seed_pending(application_id, application.payment_order_id)
    logger.info("payment.voucher_created", application_id=application_id, reference=reference)
    return application


async def apply_payment_processing(
    uow: UnitOfWork, application_id: int, order_id: str
) -> Application | None:
    """Payment started at the processor -> PAYMENT_PROCESSING.

    Seeds a pending recovery attempt for (application, order) so the sweep can
    reconcile it if the success notification never arrives.
    """
    application = await uow.applications.mark_payment_processing(application_id, order_id)
    if application is None:
        await _log_conflict(uow, "payment_processing", application_id)
        return None
    await uow.recovery_attempts.seed_pending(application_id, order_id)
    logger.info("payment.processing", application_id=application_id, order_id=order_id)
    return application
