"""Admin service tests.

Tests focus on operator actions racing the automated paths:
- Retry re-enqueues at admin priority and reuses a scheduled retry job
- Resolve records notes and drops pending jobs without changing status
- Cancel refuses terminal and worker-owned applications
- Pause / resume / stats
- Triage view of one application
"""

import pytest

from permitflow.core.timezone import utcnow
from permitflow.models.application import ApplicationStatus, ErrorCategory, QueueStatus
from permitflow.models.generation_job import JobPriority, JobStatus
from permitflow.models.payment_event import PaymentEvent
from permitflow.services.admin import AdminService
from permitflow.services.exceptions import ActionNotAllowedError, ApplicationNotFoundError


@pytest.fixture
def admin(uow_factory, queue) -> AdminService:
    return AdminService(uow_factory, queue)


async def _failed_generation(uow_factory, make_application, queue):
    """Application whose first attempt failed; its job waits for the backoff."""
    application = await make_application(status=ApplicationStatus.PAYMENT_RECEIVED)
    async with await uow_factory() as uow:
        await queue.enqueue_application(uow, application.id)
    async with await uow_factory() as uow:
        job = await queue.claim_next(uow, "worker-1")
        started_at = utcnow()
        await uow.applications.claim_for_generation(
            application.id, ApplicationStatus.IN_QUEUE, job.id, started_at=started_at
        )
    async with await uow_factory() as uow:
        await uow.applications.record_generation_failure(
            application.id, started_at, "portal down", ErrorCategory.UNKNOWN, None
        )
        await queue.fail(uow, job.id, "portal down")
    return application, job


@pytest.mark.asyncio
async def test_retry_bumps_scheduled_retry_job(admin, uow_factory, make_application, queue):
    """Test admin retry of a failed generation.

    Scenario:
    1. First attempt failed; automatic retry job queued behind its backoff
    2. Admin retries
    3. Assert IN_QUEUE, same job, ADMIN priority, claimable now
    """
    application, job = await _failed_generation(uow_factory, make_application, queue)

    queued = await admin.retry(application.id, admin="ops@example.com")

    assert queued.status == ApplicationStatus.IN_QUEUE
    assert queued.queue_status == QueueStatus.QUEUED
    assert queued.queue_job_id == job.id

    async with await uow_factory() as uow:
        claimed = await queue.claim_next(uow, "worker-2")
    assert claimed.id == job.id
    assert claimed.priority == JobPriority.ADMIN


@pytest.mark.asyncio
async def test_retry_rejects_non_failed_application(admin, make_application):
    application = await make_application(
        status=ApplicationStatus.PERMIT_READY, queue_status=QueueStatus.COMPLETED
    )

    with pytest.raises(ActionNotAllowedError):
        await admin.retry(application.id)


@pytest.mark.asyncio
async def test_retry_unknown_application(admin):
    with pytest.raises(ApplicationNotFoundError):
        await admin.retry(999_999)


@pytest.mark.asyncio
async def test_resolve_keeps_status_and_discards_jobs(
    admin, uow_factory, make_application, queue
):
    application, job = await _failed_generation(uow_factory, make_application, queue)

    resolved = await admin.resolve(application.id, "Permit issued by phone", "ops@example.com")

    assert resolved.status == ApplicationStatus.ERROR_GENERATING_PERMIT
    assert resolved.resolution_notes == "Permit issued by phone"
    assert resolved.resolved_by == "ops@example.com"
    assert resolved.resolved_at is not None
    async with await uow_factory() as uow:
        discarded = await uow.jobs.get_by_id(job.id)
    assert discarded.status == JobStatus.FAILED


@pytest.mark.asyncio
async def test_resolve_refused_while_queued(admin, uow_factory, make_application, queue):
    application = await make_application(status=ApplicationStatus.PAYMENT_RECEIVED)
    async with await uow_factory() as uow:
        await queue.enqueue_application(uow, application.id)

    with pytest.raises(ActionNotAllowedError):
        await admin.resolve(application.id, "notes")


@pytest.mark.asyncio
async def test_cancel_queued_application_drops_job(admin, uow_factory, make_application, queue):
    application = await make_application(status=ApplicationStatus.PAYMENT_RECEIVED)
    async with await uow_factory() as uow:
        queued = await queue.enqueue_application(uow, application.id)

    cancelled = await admin.cancel(application.id)

    assert cancelled.status == ApplicationStatus.CANCELLED
    assert cancelled.queue_status is None
    async with await uow_factory() as uow:
        job = await uow.jobs.get_by_id(queued.queue_job_id)
        assert await queue.claim_next(uow, "worker-1") is None
    assert job.status == JobStatus.FAILED


@pytest.mark.parametrize(
    "status, queue_status",
    [
        (ApplicationStatus.PROCESSING_DOCUMENTS, QueueStatus.PROCESSING),
        (ApplicationStatus.PERMIT_READY, QueueStatus.COMPLETED),
        (ApplicationStatus.CANCELLED, None),
    ],
)
@pytest.mark.asyncio
async def test_cancel_refused(admin, make_application, status, queue_status):
    application = await make_application(status=status, queue_status=queue_status)

    with pytest.raises(ActionNotAllowedError):
        await admin.cancel(application.id)


@pytest.mark.asyncio
async def test_pause_resume_and_stats(admin, make_application):
    await make_application()
    await make_application(status=ApplicationStatus.PAYMENT_FAILED)

    await admin.pause_queue()
    paused = await admin.queue_stats()
    await admin.resume_queue()
    resumed = await admin.queue_stats()

    assert paused["queue"]["paused"] is True
    assert resumed["queue"]["paused"] is False
    assert resumed["applications"] == {"AWAITING_PAYMENT": 1, "PAYMENT_FAILED": 1}


@pytest.mark.asyncio
async def test_triage_view_shows_failure_and_payment_history(
    admin, uow_factory, make_application, queue
):
    """Test the triage view of a failed generation.

    Scenario:
    1. Application paid (one ledger event) and failed its first attempt
    2. Assert the view carries the error, the scheduled retry job and the event
    """
    application, job = await _failed_generation(uow_factory, make_application, queue)
    async with await uow_factory() as uow:
        await uow.payment_events.append(
            PaymentEvent(
                application_id=application.id,
                event_type="payment_intent.succeeded",
                order_id="pi_paid",
                processor_event_id="evt_paid",
            )
        )

    view = await admin.get_application(application.id)

    assert view["status"] == "ERROR_GENERATING_PERMIT"
    assert view["errorCategory"] == "UNKNOWN"
    assert view["errorMessage"] == "portal down"
    assert view["documentsComplete"] is False
    assert view["pendingJob"] == {"jobId": job.id, "status": "queued", "attempts": 1}
    assert [e["processorEventId"] for e in view["paymentEvents"]] == ["evt_paid"]


@pytest.mark.asyncio
async def test_triage_view_documents_complete(admin, make_application):
    application = await make_application(
        status=ApplicationStatus.PERMIT_READY,
        queue_status=QueueStatus.COMPLETED,
        permit_file_path="permits/1/permit.pdf",
        receipt_file_path="permits/1/receipt.pdf",
        certificate_file_path="permits/1/certificate.pdf",
        plate_file_path="permits/1/plate.pdf",
    )

    view = await admin.get_application(application.id)

    assert view["documentsComplete"] is True
    assert view["pendingJob"] is None
    assert view["paymentEvents"] == []

    with pytest.raises(ApplicationNotFoundError):
        await admin.get_application(424242)
