"""Webhook ingestion tests.

Tests focus on exactly-once processing of payment notifications:
- Payment succeeded -> PAYMENT_RECEIVED -> IN_QUEUE with a job, in one transaction
- Duplicate event ids (sequential and concurrent) produce one ledger row
- Late or conflicting events are acknowledged without changing state
- A declined payment can be retried, and a late success of the same order applies
- Voucher events keep their metadata in the ledger only
- A storage failure rolls back everything and leaves a recovery attempt
"""

import asyncio
import json

import pytest

from permitflow.models.application import ApplicationStatus, QueueStatus
from permitflow.models.generation_job import JobStatus
from permitflow.models.recovery_attempt import RecoveryStatus
from permitflow.models.webhook_receipt import WebhookReceipt
from permitflow.services.payments.envelope import EventKind, WebhookEnvelope
from permitflow.services.payments.ingestion import WebhookIngestionService
from permitflow.services.queue import JobQueue


def _envelope(event_id: str, event_type: str, application_id=None, order_id=None, **data):
    body = {
        "eventId": event_id,
        "type": event_type,
        "data": {"orderId": order_id, "metadata": {"applicationId": application_id}, **data},
    }
    return WebhookEnvelope.parse(json.dumps(body).encode())


async def queue_depth(uow) -> int:
    counts = await uow.jobs.counts_by_status()
    return counts.get(JobStatus.QUEUED, 0) + counts.get(JobStatus.ACTIVE, 0)


@pytest.fixture
def ingestion(uow_factory, queue) -> WebhookIngestionService:
    return WebhookIngestionService(uow_factory, queue)


@pytest.mark.asyncio
async def test_payment_succeeded_queues_application(ingestion, uow_factory, make_application):
    """Test payment confirmation moves the application into the queue.

    Scenario:
    1. Application awaiting payment with order id "pi_100"
    2. payment_intent.succeeded for that order id (no application id in metadata)
    3. Assert IN_QUEUE / queued, one queued job, one ledger row
    """
    application = await make_application(payment_order_id="pi_100")

    result = await ingestion.ingest(
        _envelope("evt_1", "payment_intent.succeeded", order_id="pi_100")
    )

    assert result.applied is True
    assert result.duplicate is False
    assert result.application_id == application.id
    assert result.application_status == ApplicationStatus.IN_QUEUE.value
    assert result.as_response()["status"] == "processed"

    async with await uow_factory() as uow:
        current = await uow.applications.get_by_id(application.id)
        job = await uow.jobs.get_pending_for_application(application.id)
        events = await uow.payment_events.list_for_application(application.id)

    assert current.status == ApplicationStatus.IN_QUEUE
    assert current.queue_status == QueueStatus.QUEUED
    assert current.queue_job_id == job.id
    assert job.status == JobStatus.QUEUED
    assert [e.processor_event_id for e in events] == ["evt_1"]


@pytest.mark.asyncio
async def test_duplicate_event_is_acknowledged_without_effects(
    ingestion, uow_factory, make_application
):
    application = await make_application(status=ApplicationStatus.PAYMENT_PROCESSING)
    envelope = _envelope("evt_dup", "payment_intent.succeeded", application.id, "pi_dup")

    await ingestion.ingest(envelope)
    second = await ingestion.ingest(envelope)

    assert second.duplicate is True
    assert second.applied is False
    assert second.as_response()["status"] == "duplicate"
    async with await uow_factory() as uow:
        assert len(await uow.payment_events.list_for_application(application.id)) == 1
        assert (await queue_depth(uow)) == 1


@pytest.mark.asyncio
async def test_concurrent_duplicate_deliveries_write_one_event(
    ingestion, uow_factory, make_application
):
    """Test two deliveries of "evt_123" racing each other produce one PaymentEvent.

    The losing INSERT ... ON CONFLICT DO NOTHING waits for the winner's commit
    and then reports the duplicate.
    """
    application = await make_application(status=ApplicationStatus.PAYMENT_PROCESSING)
    envelope = _envelope("evt_123", "payment_intent.succeeded", application.id, "pi_123")

    results = await asyncio.gather(ingestion.ingest(envelope), ingestion.ingest(envelope))

    assert sorted(r.duplicate for r in results) == [False, True]
    async with await uow_factory() as uow:
        events = await uow.payment_events.list_for_application(application.id)
        current = await uow.applications.get_by_id(application.id)

    assert len(events) == 1
    assert current.status == ApplicationStatus.IN_QUEUE


@pytest.mark.asyncio
async def test_late_success_of_declined_order_queues_application(
    ingestion, uow_factory, make_application
):
    """Test the processor settling a declined order after all still produces the permit."""
    application = await make_application(
        status=ApplicationStatus.PAYMENT_FAILED, payment_order_id="pi_late"
    )

    result = await ingestion.ingest(
        _envelope("evt_late", "charge.succeeded", application.id, "pi_late")
    )

    assert result.applied is True
    assert result.application_status == ApplicationStatus.IN_QUEUE.value
    async with await uow_factory() as uow:
        assert await uow.jobs.get_pending_for_application(application.id) is not None


@pytest.mark.asyncio
async def test_success_for_other_order_leaves_declined_application(
    ingestion, uow_factory, make_application
):
    application = await make_application(
        status=ApplicationStatus.PAYMENT_FAILED, payment_order_id="pi_declined"
    )

    result = await ingestion.ingest(
        _envelope("evt_other", "charge.succeeded", application.id, "pi_unrelated")
    )

    assert result.applied is False
    assert result.application_status == ApplicationStatus.PAYMENT_FAILED.value
    async with await uow_factory() as uow:
        assert await uow.jobs.get_pending_for_application(application.id) is None
        # The event is still recorded for audit
        assert len(await uow.payment_events.list_for_application(application.id)) == 1


@pytest.mark.asyncio
async def test_retry_after_decline_reaches_the_queue(ingestion, uow_factory, make_application):
    """Test a declined card followed by a second card that succeeds.

    Scenario:
    1. payment_failed for "pi_first"
    2. processing then succeeded for "pi_second"
    3. A late decline of "pi_first" arrives afterwards and changes nothing
    """
    application = await make_application(
        status=ApplicationStatus.PAYMENT_PROCESSING, payment_order_id="pi_first"
    )

    declined = await ingestion.ingest(
        _envelope("evt_d1", "payment_intent.payment_failed", application.id, "pi_first")
    )
    retried = await ingestion.ingest(
        _envelope("evt_p2", "payment_intent.processing", application.id, "pi_second")
    )
    stale = await ingestion.ingest(
        _envelope("evt_d1b", "payment_intent.canceled", application.id, "pi_first")
    )
    paid = await ingestion.ingest(
        _envelope("evt_s2", "payment_intent.succeeded", application.id, "pi_second")
    )

    assert declined.application_status == ApplicationStatus.PAYMENT_FAILED.value
    assert retried.application_status == ApplicationStatus.PAYMENT_PROCESSING.value
    assert stale.applied is False
    assert stale.application_status == ApplicationStatus.PAYMENT_PROCESSING.value
    assert paid.application_status == ApplicationStatus.IN_QUEUE.value
    async with await uow_factory() as uow:
        current = await uow.applications.get_by_id(application.id)
    assert current.payment_order_id == "pi_second"


@pytest.mark.asyncio
async def test_payment_failed_event(ingestion, make_application):
    application = await make_application(status=ApplicationStatus.PAYMENT_PROCESSING)

    result = await ingestion.ingest(
        _envelope("evt_f", "payment_intent.payment_failed", application.id, "pi_f")
    )

    assert result.kind == EventKind.FAILED
    assert result.application_status == ApplicationStatus.PAYMENT_FAILED.value


@pytest.mark.asyncio
async def test_processing_event_seeds_recovery_attempt(ingestion, uow_factory, make_application):
    application = await make_application()

    await ingestion.ingest(
        _envelope("evt_p", "payment_intent.processing", application.id, "pi_proc")
    )

    async with await uow_factory() as uow:
        current = await uow.applications.get_by_id(application.id)
        attempt = await uow.recovery_attempts.get(application.id, "pi_proc")

    assert current.status == ApplicationStatus.PAYMENT_PROCESSING
    assert current.payment_order_id == "pi_proc"
    assert attempt.recovery_status == RecoveryStatus.PENDING
    assert attempt.attempt_count == 0


@pytest.mark.asyncio
async def test_cash_voucher_metadata_stays_in_ledger(ingestion, uow_factory, make_application):
    """Test a cash voucher moves the application to AWAITING_OXXO_PAYMENT.

    Voucher reference is copied to the application; expiry and URL are only in
    the PaymentEvent payload.
    """
    application = await make_application()

    await ingestion.ingest(
        _envelope(
            "evt_v",
            "payment_intent.requires_action",
            application.id,
            "pi_cash",
            paymentMethodDetails={
                "type": "oxxo",
                "reference": "9300 5555",
                "expiresAt": "2026-10-22T05:59:59Z",
                "hostedVoucherUrl": "https://pay.example/v/5555",
            },
        )
    )

    async with await uow_factory() as uow:
        current = await uow.applications.get_by_id(application.id)
        voucher = await uow.payment_events.get_latest_voucher(application.id)

    assert current.status == ApplicationStatus.AWAITING_OXXO_PAYMENT
    assert current.payment_reference == "9300 5555"
    assert voucher.payload["voucherUrl"] == "https://pay.example/v/5555"
    assert voucher.voucher_expires_at.isoformat() == "2026-10-22T05:59:59"


@pytest.mark.asyncio
async def test_unknown_event_type_is_recorded_only(ingestion, uow_factory, make_application):
    application = await make_application()

    result = await ingestion.ingest(_envelope("evt_u", "customer.updated", application.id))

    assert result.kind == EventKind.UNKNOWN
    assert result.applied is False
    assert result.application_status == ApplicationStatus.AWAITING_PAYMENT.value


@pytest.mark.asyncio
async def test_event_for_unknown_application_is_acknowledged(ingestion, uow_factory):
    result = await ingestion.ingest(
        _envelope("evt_orphan", "payment_intent.succeeded", order_id="pi_nobody")
    )

    assert result.application_id is None
    assert result.applied is False
    async with await uow_factory() as uow:
        assert await uow.session.get(WebhookReceipt, "evt_orphan") is not None


class ExplodingQueue(JobQueue):
    async def enqueue(self, uow, application_id, priority=0):
        raise RuntimeError("queue storage unavailable")


@pytest.mark.asyncio
async def test_storage_failure_rolls_back_and_seeds_recovery(uow_factory, make_application):
    """Test a failure mid-transaction leaves no receipt and a pending recovery attempt.

    Scenario:
    1. Enqueue raises after the transition and ledger append
    2. Assert the exception propagates (the processor will redeliver)
    3. Assert receipt, event and transition were rolled back
    4. Assert a pending recovery attempt records the error
    """
    application = await make_application(status=ApplicationStatus.PAYMENT_PROCESSING)
    service = WebhookIngestionService(uow_factory, ExplodingQueue())

    with pytest.raises(RuntimeError, match="queue storage unavailable"):
        await service.ingest(
            _envelope("evt_boom", "payment_intent.succeeded", application.id, "pi_boom")
        )

    async with await uow_factory() as uow:
        current = await uow.applications.get_by_id(application.id)
        attempt = await uow.recovery_attempts.get(application.id, "pi_boom")

        assert await uow.session.get(WebhookReceipt, "evt_boom") is None
        assert await uow.payment_events.list_for_application(application.id) == []

    assert current.status == ApplicationStatus.PAYMENT_PROCESSING
    assert attempt.recovery_status == RecoveryStatus.PENDING
    assert "queue storage unavailable" in attempt.last_error
