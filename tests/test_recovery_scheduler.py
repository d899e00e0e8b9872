"""Recovery scheduler tests.

Tests run each sweep against a real database; the payment processor is an
httpx.MockTransport:
- Orphaned attempts are re-enqueued exactly once, live leases are left alone
- A lost lease counts as an attempt; the last one fails the application
- Payments without a webhook are reconciled from the processor's answer
- The per-payment attempt ceiling is enforced
- Permits, cash vouchers and unpaid applications expire
"""

from datetime import timedelta

import httpx
import pytest
from sqlalchemy import update

from permitflow.core.config import Settings
from permitflow.core.timezone import utcnow
from permitflow.models.application import ApplicationStatus, QueueStatus
from permitflow.models.generation_job import GenerationJob, JobPriority, JobStatus
from permitflow.models.payment_event import VOUCHER_EXPIRED_EVENT, PaymentEvent
from permitflow.models.recovery_attempt import RecoveryAttempt, RecoveryStatus
from permitflow.services.payments.processor_client import PaymentProcessorClient
from permitflow.workers.recovery_scheduler import RecoveryReport, RecoveryScheduler


class ProcessorStub:
    """Serves canned payment intent responses and counts requests."""

    def __init__(self, responses: dict[str, httpx.Response] | None = None):
        self.responses = responses or {}
        self.requests: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        intent_id = request.url.path.rsplit("/", 1)[-1]
        self.requests.append(intent_id)
        return self.responses.get(intent_id, httpx.Response(404))

    def client(self) -> PaymentProcessorClient:
        return PaymentProcessorClient(
            "sk_test", base_url="https://processor.test", transport=httpx.MockTransport(self)
        )


@pytest.fixture
def settings() -> Settings:
    return Settings(APP_ENV="test", RECOVERY_BATCH_SIZE=10)  # type: ignore[call-arg]


@pytest.fixture
def make_scheduler(uow_factory, queue, settings):
    def _make(stub: ProcessorStub | None = None) -> RecoveryScheduler:
        return RecoveryScheduler(uow_factory, queue, (stub or ProcessorStub()).client(), settings)

    return _make


async def _backdate_attempts(uow_factory, minutes: int = 120) -> None:
    async with await uow_factory() as uow:
        await uow.session.execute(
            update(RecoveryAttempt).values(created_at=utcnow() - timedelta(minutes=minutes))
        )


async def _orphan(
    uow_factory, make_application, queue, lease_expired: bool = True, prior_attempts: int = 0
):
    """Application left in processing by a worker that died mid-attempt."""
    started_at = utcnow() - timedelta(hours=1)
    application = await make_application(status=ApplicationStatus.PAYMENT_RECEIVED)
    async with await uow_factory() as uow:
        await queue.enqueue_application(uow, application.id)
    async with await uow_factory() as uow:
        job = await queue.claim_next(uow, "worker-dead")
        await uow.applications.claim_for_generation(
            application.id, ApplicationStatus.IN_QUEUE, job.id, started_at=started_at
        )
        job.attempts = prior_attempts
        if lease_expired:
            job.leased_until = utcnow() - timedelta(minutes=1)
        uow.session.add(job)
    return application


@pytest.mark.asyncio
async def test_orphan_is_requeued_exactly_once(
    uow_factory, make_application, queue, make_scheduler
):
    """Test the stuck-application sweep.

    Scenario:
    1. Application stuck in processing for an hour, its job lease expired
    2. Run the sweep twice
    3. Assert it was re-enqueued once, at RETRY priority, with one pending job
       whose lost lease counted as an attempt
    """
    application = await _orphan(uow_factory, make_application, queue)
    scheduler = make_scheduler()

    first, second = RecoveryReport(), RecoveryReport()
    await scheduler.sweep_stuck_applications(first)
    await scheduler.sweep_stuck_applications(second)

    assert first.orphans_requeued == 1
    assert second.orphans_requeued == 0

    async with await uow_factory() as uow:
        current = await uow.applications.get_by_id(application.id)
        job = await uow.jobs.get_pending_for_application(application.id)
        counts = await uow.jobs.counts_by_status()

    assert current.status == ApplicationStatus.IN_QUEUE
    assert current.queue_status == QueueStatus.QUEUED
    assert current.queue_started_at is None
    assert current.queue_job_id == job.id
    assert job.status == JobStatus.QUEUED
    assert job.priority == JobPriority.RETRY
    assert job.attempts == 1
    assert job.last_error == "lease expired (worker worker-dead)"
    assert counts == {JobStatus.QUEUED: 1}


@pytest.mark.asyncio
async def test_orphan_out_of_attempts_fails_application(
    uow_factory, make_application, queue, make_scheduler
):
    """Test a job whose worker keeps dying stops being retried.

    The third lost lease exhausts the job (max_attempts=3): the job fails and
    the application lands in ERROR_GENERATING_PERMIT for triage.
    """
    application = await _orphan(uow_factory, make_application, queue, prior_attempts=2)
    report = RecoveryReport()

    await make_scheduler().sweep_stuck_applications(report)

    assert report.orphans_failed == 1
    assert report.orphans_requeued == 0
    async with await uow_factory() as uow:
        current = await uow.applications.get_by_id(application.id)
        counts = await uow.jobs.counts_by_status()

    assert current.status == ApplicationStatus.ERROR_GENERATING_PERMIT
    assert current.queue_status == QueueStatus.FAILED
    assert current.retry_count == 1
    assert "abandoned after 3 attempts" in current.error_message
    assert counts == {JobStatus.FAILED: 1}


@pytest.mark.asyncio
async def test_orphan_with_live_lease_is_skipped(
    uow_factory, make_application, queue, make_scheduler
):
    application = await _orphan(uow_factory, make_application, queue, lease_expired=False)
    report = RecoveryReport()

    await make_scheduler().sweep_stuck_applications(report)

    assert report.orphans_skipped == 1
    async with await uow_factory() as uow:
        current = await uow.applications.get_by_id(application.id)
    assert current.status == ApplicationStatus.PROCESSING_DOCUMENTS


@pytest.mark.asyncio
async def test_missing_webhook_payment_is_recovered(uow_factory, make_application, make_scheduler):
    """Test a succeeded payment whose webhook never arrived.

    Scenario:
    1. Application in PAYMENT_PROCESSING with a pending recovery attempt older
       than the threshold
    2. Processor says the intent succeeded
    3. Assert the application is queued and the attempt succeeded
    """
    application = await make_application(
        status=ApplicationStatus.PAYMENT_PROCESSING, payment_order_id="pi_lost"
    )
    async with await uow_factory() as uow:
        await uow.recovery_attempts.seed_pending(application.id, "pi_lost")
    await _backdate_attempts(uow_factory)

    stub = ProcessorStub({"pi_lost": httpx.Response(200, json={"status": "succeeded"})})
    report = RecoveryReport()
    await make_scheduler(stub).sweep_payments(report)

    assert stub.requests == ["pi_lost"]
    assert report.payments_recovered == 1
    async with await uow_factory() as uow:
        current = await uow.applications.get_by_id(application.id)
        attempt = await uow.recovery_attempts.get(application.id, "pi_lost")
        job = await uow.jobs.get_pending_for_application(application.id)

    assert current.status == ApplicationStatus.IN_QUEUE
    assert job is not None
    assert attempt.recovery_status == RecoveryStatus.SUCCEEDED
    assert attempt.attempt_count == 1


@pytest.mark.asyncio
async def test_declined_payment_is_failed(uow_factory, make_application, make_scheduler):
    application = await make_application(
        status=ApplicationStatus.PAYMENT_PROCESSING, payment_order_id="pi_declined"
    )
    async with await uow_factory() as uow:
        await uow.recovery_attempts.seed_pending(application.id, "pi_declined")
    await _backdate_attempts(uow_factory)

    stub = ProcessorStub({"pi_declined": httpx.Response(200, json={"status": "canceled"})})
    report = RecoveryReport()
    await make_scheduler(stub).sweep_payments(report)

    assert report.payments_failed == 1
    async with await uow_factory() as uow:
        current = await uow.applications.get_by_id(application.id)
    assert current.status == ApplicationStatus.PAYMENT_FAILED


@pytest.mark.asyncio
async def test_declined_order_settled_later_is_recovered(
    uow_factory, make_application, make_scheduler
):
    """Test a decline that the processor later reverses to a success.

    Scenario:
    1. Application in PAYMENT_FAILED for "pi_flip", webhook for the success lost
    2. Processor now reports the intent succeeded
    3. Assert the application is queued
    """
    application = await make_application(
        status=ApplicationStatus.PAYMENT_FAILED, payment_order_id="pi_flip"
    )
    async with await uow_factory() as uow:
        await uow.recovery_attempts.seed_pending(application.id, "pi_flip")
    await _backdate_attempts(uow_factory)

    stub = ProcessorStub({"pi_flip": httpx.Response(200, json={"status": "succeeded"})})
    report = RecoveryReport()
    await make_scheduler(stub).sweep_payments(report)

    assert stub.requests == ["pi_flip"]
    assert report.payments_recovered == 1
    async with await uow_factory() as uow:
        current = await uow.applications.get_by_id(application.id)
    assert current.status == ApplicationStatus.IN_QUEUE


@pytest.mark.asyncio
async def test_confirmed_decline_closes_attempt(uow_factory, make_application, make_scheduler):
    application = await make_application(
        status=ApplicationStatus.PAYMENT_FAILED, payment_order_id="pi_really_declined"
    )
    async with await uow_factory() as uow:
        await uow.recovery_attempts.seed_pending(application.id, "pi_really_declined")
        await uow.recovery_attempts.seed_pending(application.id, "pi_replaced")
    await _backdate_attempts(uow_factory)

    stub = ProcessorStub(
        {"pi_really_declined": httpx.Response(200, json={"status": "canceled"})}
    )
    report = RecoveryReport()
    await make_scheduler(stub).sweep_payments(report)

    # The attempt for an order the application no longer uses is closed unqueried
    assert stub.requests == ["pi_really_declined"]
    async with await uow_factory() as uow:
        current = await uow.applications.get_by_id(application.id)
        declined = await uow.recovery_attempts.get(application.id, "pi_really_declined")
        replaced = await uow.recovery_attempts.get(application.id, "pi_replaced")
    assert current.status == ApplicationStatus.PAYMENT_FAILED
    assert declined.recovery_status == RecoveryStatus.FAILED
    assert replaced.recovery_status == RecoveryStatus.FAILED


@pytest.mark.asyncio
async def test_recent_decline_with_order_is_seeded(uow_factory, make_application, make_scheduler):
    application = await make_application(
        status=ApplicationStatus.PAYMENT_FAILED,
        payment_order_id="pi_quiet",
        updated_at=utcnow() - timedelta(hours=3),
    )
    report = RecoveryReport()

    await make_scheduler().sweep_payments(report)

    assert report.payments_seeded == 1
    async with await uow_factory() as uow:
        attempt = await uow.recovery_attempts.get(application.id, "pi_quiet")
    assert attempt.recovery_status == RecoveryStatus.PENDING


@pytest.mark.asyncio
async def test_transient_processor_error_keeps_attempt_open(
    uow_factory, make_application, make_scheduler
):
    """Test a 503 counts the attempt, records the error, and leaves it pending."""
    application = await make_application(
        status=ApplicationStatus.PAYMENT_PROCESSING, payment_order_id="pi_flaky"
    )
    async with await uow_factory() as uow:
        await uow.recovery_attempts.seed_pending(application.id, "pi_flaky")
    await _backdate_attempts(uow_factory)

    stub = ProcessorStub({"pi_flaky": httpx.Response(503, text="unavailable")})
    report = RecoveryReport()
    await make_scheduler(stub).sweep_payments(report)

    assert report.errors == 1
    async with await uow_factory() as uow:
        attempt = await uow.recovery_attempts.get(application.id, "pi_flaky")
        current = await uow.applications.get_by_id(application.id)

    assert attempt.attempt_count == 1
    assert attempt.recovery_status == RecoveryStatus.PENDING
    assert "503" in attempt.last_error
    assert current.status == ApplicationStatus.PAYMENT_PROCESSING


@pytest.mark.asyncio
async def test_unknown_intent_fails_attempt(uow_factory, make_application, make_scheduler):
    application = await make_application(
        status=ApplicationStatus.PAYMENT_PROCESSING, payment_order_id="pi_ghost"
    )
    async with await uow_factory() as uow:
        await uow.recovery_attempts.seed_pending(application.id, "pi_ghost")
    await _backdate_attempts(uow_factory)

    report = RecoveryReport()
    await make_scheduler(ProcessorStub()).sweep_payments(report)

    async with await uow_factory() as uow:
        attempt = await uow.recovery_attempts.get(application.id, "pi_ghost")
    assert report.payments_failed == 1
    assert attempt.recovery_status == RecoveryStatus.FAILED
    assert "Unknown payment intent" in attempt.last_error


@pytest.mark.asyncio
async def test_attempt_ceiling_stops_requerying(uow_factory, make_application, make_scheduler):
    """Test an attempt at the ceiling is closed without calling the processor."""
    application = await make_application(
        status=ApplicationStatus.PAYMENT_PROCESSING, payment_order_id="pi_max"
    )
    async with await uow_factory() as uow:
        for _ in range(3):
            await uow.recovery_attempts.record_attempt(application.id, "pi_max")

    stub = ProcessorStub()
    report = RecoveryReport()
    await make_scheduler(stub).sweep_payments(report)

    assert stub.requests == []
    assert report.payments_exhausted == 1
    async with await uow_factory() as uow:
        attempt = await uow.recovery_attempts.get(application.id, "pi_max")
    assert attempt.recovery_status == RecoveryStatus.MAX_ATTEMPTS_REACHED


@pytest.mark.asyncio
async def test_already_settled_payment_is_not_requeried(
    uow_factory, make_application, make_scheduler
):
    application = await make_application(
        status=ApplicationStatus.PAYMENT_RECEIVED, payment_order_id="pi_done"
    )
    async with await uow_factory() as uow:
        await uow.recovery_attempts.seed_pending(application.id, "pi_done")
    await _backdate_attempts(uow_factory)

    stub = ProcessorStub()
    await make_scheduler(stub).sweep_payments(RecoveryReport())

    assert stub.requests == []
    async with await uow_factory() as uow:
        attempt = await uow.recovery_attempts.get(application.id, "pi_done")
    assert attempt.recovery_status == RecoveryStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_drifted_payment_is_seeded(uow_factory, make_application, make_scheduler):
    application = await make_application(
        status=ApplicationStatus.PAYMENT_PROCESSING,
        payment_order_id="pi_drift",
        updated_at=utcnow() - timedelta(hours=3),
    )

    report = RecoveryReport()
    await make_scheduler().sweep_payments(report)

    assert report.payments_seeded == 1
    async with await uow_factory() as uow:
        attempt = await uow.recovery_attempts.get(application.id, "pi_drift")
    assert attempt.recovery_status == RecoveryStatus.PENDING


@pytest.mark.asyncio
async def test_expiration_sweep(uow_factory, make_application, make_scheduler):
    """Test permits, vouchers and unpaid applications past their deadlines expire.

    Scenario:
    1. Permit whose validity ended, OXXO voucher whose expiry passed, unpaid
       application past its payment window, and a voucher still valid
    2. Run the expiration sweep
    3. Assert EXPIRED / PAYMENT_FAILED (+ voucher.expired event) / EXPIRED, and
       the valid voucher untouched
    """
    now = utcnow()
    permit = await make_application(
        status=ApplicationStatus.PERMIT_READY,
        queue_status=QueueStatus.COMPLETED,
        permit_expires_at=now - timedelta(days=1),
    )
    voucher = await make_application(
        status=ApplicationStatus.AWAITING_OXXO_PAYMENT,
        payment_order_id="pi_oxxo",
        payment_reference="9300 7777",
    )
    valid_voucher = await make_application(status=ApplicationStatus.AWAITING_OXXO_PAYMENT)
    unpaid = await make_application(expires_at=now - timedelta(hours=1))
    async with await uow_factory() as uow:
        await uow.payment_events.append(
            PaymentEvent(
                application_id=voucher.id,
                event_type="payment_intent.requires_action",
                payload={
                    "voucherReference": "9300 7777",
                    "voucherExpiresAt": (now - timedelta(hours=2)).isoformat(),
                },
            )
        )
        await uow.payment_events.append(
            PaymentEvent(
                application_id=valid_voucher.id,
                event_type="payment_intent.requires_action",
                payload={
                    "voucherReference": "9300 8888",
                    "voucherExpiresAt": (now + timedelta(days=2)).isoformat(),
                },
            )
        )
        await uow.recovery_attempts.seed_pending(voucher.id, "pi_oxxo")

    report = RecoveryReport()
    await make_scheduler().sweep_expirations(report)

    assert report.permits_expired == 1
    assert report.vouchers_expired == 1
    assert report.unpaid_expired == 1

    async with await uow_factory() as uow:
        statuses = {
            app.id: (await uow.applications.get_by_id(app.id)).status
            for app in (permit, voucher, valid_voucher, unpaid)
        }
        events = await uow.payment_events.list_for_application(voucher.id)
        attempt = await uow.recovery_attempts.get(voucher.id, "pi_oxxo")

    assert statuses == {
        permit.id: ApplicationStatus.EXPIRED,
        voucher.id: ApplicationStatus.PAYMENT_FAILED,
        valid_voucher.id: ApplicationStatus.AWAITING_OXXO_PAYMENT,
        unpaid.id: ApplicationStatus.EXPIRED,
    }
    assert events[-1].event_type == VOUCHER_EXPIRED_EVENT
    assert events[-1].payload["source"] == "recovery_sweep"
    assert attempt.recovery_status == RecoveryStatus.FAILED


@pytest.mark.asyncio
async def test_valid_vouchers_do_not_hide_expired_one(uow_factory, queue, make_application):
    """Test the voucher sweep pages past rows whose vouchers are still valid.

    Two valid vouchers sort ahead of an expired one and the batch holds a
    single row; the expired voucher must still be failed in the same sweep.
    """
    now = utcnow()
    valid = [
        await make_application(status=ApplicationStatus.AWAITING_OXXO_PAYMENT) for _ in range(2)
    ]
    expired = await make_application(
        status=ApplicationStatus.AWAITING_OXXO_PAYMENT, expires_at=now - timedelta(hours=1)
    )
    async with await uow_factory() as uow:
        for application in valid:
            await uow.payment_events.append(
                PaymentEvent(
                    application_id=application.id,
                    event_type="payment_intent.requires_action",
                    payload={
                        "voucherReference": f"9300 {application.id}",
                        "voucherExpiresAt": (now + timedelta(days=2)).isoformat(),
                    },
                )
            )
    settings = Settings(APP_ENV="test", RECOVERY_BATCH_SIZE=1)  # type: ignore[call-arg]
    scheduler = RecoveryScheduler(uow_factory, queue, ProcessorStub().client(), settings)

    report = RecoveryReport()
    await scheduler.sweep_expirations(report)

    assert report.vouchers_expired == 1
    async with await uow_factory() as uow:
        current = await uow.applications.get_by_id(expired.id)
        still_valid = [await uow.applications.get_by_id(app.id) for app in valid]
    assert current.status == ApplicationStatus.PAYMENT_FAILED
    assert {app.status for app in still_valid} == {ApplicationStatus.AWAITING_OXXO_PAYMENT}


@pytest.mark.asyncio
async def test_run_cycle_isolates_sweep_failures(make_scheduler, monkeypatch):
    """Test a crashing sweep is counted and the remaining sweeps still run."""
    scheduler = make_scheduler()
    ran = []

    async def broken(report):
        raise RuntimeError("database went away")

    async def housekeeping(report):
        ran.append("housekeeping")

    monkeypatch.setattr(scheduler, "sweep_payments", broken)
    monkeypatch.setattr(scheduler, "housekeeping", housekeeping)

    report = await scheduler.run_cycle()

    assert report.errors == 1
    assert ran == ["housekeeping"]


@pytest.mark.asyncio
async def test_housekeeping_purges_old_finished_rows(
    uow_factory, make_application, queue, make_scheduler
):
    application = await make_application(status=ApplicationStatus.PAYMENT_RECEIVED)
    async with await uow_factory() as uow:
        job = await queue.enqueue(uow, application.id)
    async with await uow_factory() as uow:
        await queue.discard(uow, application.id, "cancelled")
        await uow.session.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job.id)
            .values(finished_at=utcnow() - timedelta(days=2))
        )

    report = RecoveryReport()
    await make_scheduler().housekeeping(report)

    assert report.jobs_purged == 1
