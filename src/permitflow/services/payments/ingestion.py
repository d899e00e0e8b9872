"""Webhook ingestion: dedup, ledger, and dispatch of payment notifications.

The signature is verified by the HTTP layer before this service sees the
envelope. Everything here runs in one unit of work:

1. insert-if-absent into webhook_receipts (duplicate -> acknowledge, no effects)
2. append the PaymentEvent
3. apply the transition for the event kind

If any step raises, the whole transaction (receipt included) rolls back, so
the processor's redelivery is processed from scratch.
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

from permitflow.models.application import Application
from permitflow.models.payment_event import PaymentEvent
from permitflow.services.payments.envelope import EventKind, WebhookEnvelope
from permitflow.services.payments.transitions import (
    apply_payment_failed,
    apply_payment_processing,
    apply_payment_succeeded,
    apply_voucher_created,
)
from permitflow.services.queue import JobQueue
from permitflow.uow import UnitOfWork

logger = structlog.get_logger(__name__)


@dataclass
class IngestResult:
    """What happened to one delivery (returned to the processor as the ack body)."""

    event_id: str
    event_type: str
    kind: EventKind
    duplicate: bool = False
    applied: bool = False
    application_id: Optional[int] = None
    application_status: Optional[str] = None

    def as_response(self) -> dict[str, Any]:
        return {
            "status": "duplicate" if self.duplicate else "processed",
            "eventId": self.event_id,
            "applied": self.applied,
            "applicationId": self.application_id,
            "applicationStatus": self.application_status,
        }


class WebhookIngestionService:
    """Turns verified processor notifications into application transitions."""

    def __init__(self, uow_factory: Callable, queue: JobQueue):
        self.uow_factory = uow_factory
        self.queue = queue

    async def ingest(self, envelope: WebhookEnvelope) -> IngestResult:
        """Process one verified envelope exactly once per event id.

        Raises:
            Exception: Storage failures propagate after the transaction is rolled
                back and a recovery attempt has been recorded
        """
        log = logger.bind(event_id=envelope.event_id, event_type=envelope.type)
        log.info("webhook.received", kind=envelope.kind.value, order_id=envelope.order_id)

        try:
            async with await self.uow_factory() as uow:
                return await self._process(uow, envelope)
        except Exception as e:
            log.error(
                "webhook.processing_failed",
                error=str(e),
                error_type=type(e).__name__,
                application_id=envelope.application_id,
                exc_info=True,
            )
            await self._record_for_recovery(envelope, e)
            raise

    async def _process(self, uow: UnitOfWork, envelope: WebhookEnvelope) -> IngestResult:
        result = IngestResult(
            event_id=envelope.event_id, event_type=envelope.type, kind=envelope.kind
        )

        if not await uow.webhook_receipts.insert_if_absent(envelope.event_id, envelope.type):
            logger.info("webhook.duplicate", event_id=envelope.event_id)
            result.duplicate = True
            return result

        application = await self._find_application(uow, envelope)
        result.application_id = application.id if application else None

        payload = envelope.model_dump(by_alias=True, mode="json")
        if envelope.kind == EventKind.VOUCHER_CREATED:
            payload.update(envelope.voucher_payload())
        await uow.payment_events.append(
            PaymentEvent(
                application_id=result.application_id,
                event_type=envelope.type,
                order_id=envelope.order_id,
                processor_event_id=envelope.event_id,
                payload=payload,
            )
        )

        if application is None:
            logger.warning(
                "webhook.application_not_found",
                event_id=envelope.event_id,
                application_id=envelope.application_id,
                order_id=envelope.order_id,
            )
            return result

        updated = await self._dispatch(uow, envelope, application)
        result.applied = updated is not None
        current = updated or await uow.applications.get_by_id(application.id)  # type: ignore[arg-type]
        result.application_status = current.status.value if current else None
        return result

    async def _find_application(
        self, uow: UnitOfWork, envelope: WebhookEnvelope
    ) -> Application | None:
        if envelope.application_id is not None:
            application = await uow.applications.get_by_id(envelope.application_id)
            if application is not None:
                return application
        if envelope.order_id:
            return await uow.applications.get_by_order_id(envelope.order_id)
        return None

    async def _dispatch(
        self, uow: UnitOfWork, envelope: WebhookEnvelope, application: Application
    ) -> Application | None:
        application_id: int = application.id  # type: ignore[assignment]
        kind = envelope.kind

        if kind in (EventKind.SUCCEEDED, EventKind.CONFIRMED):
            return await apply_payment_succeeded(uow, self.queue, application_id, envelope.order_id)

        if kind == EventKind.FAILED:
            return await apply_payment_failed(uow, application_id, envelope.order_id)

        if kind == EventKind.VOUCHER_CREATED:
            details = envelope.data.payment_method_details
            return await apply_voucher_created(
                uow, application_id, envelope.order_id, details.reference if details else None
            )

        if kind == EventKind.PROCESSING:
            order_id = envelope.order_id or application.payment_order_id
            if not order_id:
                logger.warning("webhook.processing_without_order", application_id=application_id)
                return None
            return await apply_payment_processing(uow, application_id, order_id)

        logger.info("webhook.unhandled_event_type", event_type=envelope.type)
        return None

    async def _record_for_recovery(self, envelope: WebhookEnvelope, error: Exception) -> None:
        """Leave a pending recovery attempt so the sweep reconciles this payment."""
        if envelope.application_id is None or not envelope.order_id:
            return
        try:
            async with await self.uow_factory() as uow:
                if await uow.applications.get_by_id(envelope.application_id) is None:
                    return
                await uow.recovery_attempts.seed_pending(
                    envelope.application_id,
                    envelope.order_id,
                    last_error=f"{type(error).__name__}: {error}",
                )
        except Exception as e:
            logger.error(
                "webhook.recovery_record_failed",
                event_id=envelope.event_id,
                error=str(e),
                error_type=type(e).__name__,
            )
