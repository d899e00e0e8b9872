"""Recovery / reconciliation scheduler.

Runs one cycle every RECOVERY_INTERVAL_SECONDS, independent of request traffic:

- stuck-application sweep: re-enqueue attempts orphaned by a crashed worker
- payment-recovery sweep: re-query the processor for payments whose webhook
  never arrived and apply the same transitions as webhook ingestion
- expiration sweep: expire permits, cash vouchers and unpaid applications
- housekeeping: purge finished jobs and recovery attempts

Every row is handled in its own unit of work. A failing row is logged and
counted, and the sweep moves on to the next one.
"""

import asyncio
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Callable, Optional

import structlog

from permitflow.core.config import Settings
from permitflow.core.timezone import utcnow
from permitflow.models.application import Application, ApplicationStatus
from permitflow.models.generation_job import JobPriority
from permitflow.models.payment_event import VOUCHER_EXPIRED_EVENT, PaymentEvent
from permitflow.models.recovery_attempt import (
    OPEN_RECOVERY_STATUSES,
    RecoveryAttempt,
    RecoveryStatus,
)
from permitflow.repositories.application import PAYABLE_STATUSES
from permitflow.services.exceptions import PaymentProcessorPermanentError
from permitflow.services.payments.processor_client import (
    PaymentProcessorClient,
    PaymentState,
)
from permitflow.services.payments.transitions import (
    apply_payment_failed,
    apply_payment_succeeded,
)
from permitflow.services.queue import JobQueue
from permitflow.uow import create_uow_factory

logger = structlog.get_logger(__name__)


@dataclass
class RecoveryReport:
    """Counters of one recovery cycle."""

    orphans_requeued: int = 0
    orphans_skipped: int = 0
    orphans_failed: int = 0
    payments_seeded: int = 0
    payments_recovered: int = 0
    payments_failed: int = 0
    payments_pending: int = 0
    payments_exhausted: int = 0
    permits_expired: int = 0
    vouchers_expired: int = 0
    unpaid_expired: int = 0
    jobs_purged: int = 0
    attempts_purged: int = 0
    errors: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def _awaits_settlement(application: Application, order_id: str) -> bool:
    """Payable, or declined for this very order (which may still succeed late)."""
    if application.status in PAYABLE_STATUSES:
        return True
    return (
        application.status == ApplicationStatus.PAYMENT_FAILED
        and application.payment_order_id == order_id
    )


class RecoveryScheduler:
    """Runs the recovery sweeps against the database."""

    def __init__(
        self,
        uow_factory: Callable,
        queue: JobQueue,
        processor: PaymentProcessorClient,
        settings: Settings,
    ):
        self.uow_factory = uow_factory
        self.queue = queue
        self.processor = processor
        self.settings = settings

    @property
    def batch_size(self) -> int:
        return self.settings.recovery_batch_size

    async def run_cycle(self) -> RecoveryReport:
        """Run all sweeps once.

        Returns:
            Counters of what the cycle did
        """
        report = RecoveryReport()
        started = utcnow()

        for sweep in (
            self.sweep_stuck_applications,
            self.sweep_payments,
            self.sweep_expirations,
            self.housekeeping,
        ):
            try:
                await sweep(report)
            except Exception as e:
                report.errors += 1
                logger.error(
                    "recovery.sweep_failed",
                    sweep=sweep.__name__,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

        logger.info(
            "recovery.cycle_complete",
            duration_seconds=round((utcnow() - started).total_seconds(), 3),
            **report.as_dict(),
        )
        return report

    def _row_failed(self, report: RecoveryReport, event: str, error: Exception, **context) -> None:
        report.errors += 1
        logger.error(
            event, error=str(error), error_type=type(error).__name__, exc_info=True, **context
        )

    # Stuck applications

    async def sweep_stuck_applications(self, report: RecoveryReport) -> None:
        """Re-enqueue attempts whose worker died.

        A row qualifies when it is still ``processing``, its attempt started
        longer ago than the lease timeout, and no job of it holds a live lease.
        The lost lease counts as an attempt; a job it exhausts fails the
        application instead of re-enqueueing it.
        """
        now = utcnow()
        stale_before = now - timedelta(seconds=self.queue.lease_seconds)
        async with await self.uow_factory() as uow:
            orphans = await uow.applications.find_orphaned(stale_before, self.batch_size)

        if orphans:
            logger.info("recovery.orphans_found", count=len(orphans))

        for application in orphans:
            try:
                await self._requeue_orphan(application, report)
            except Exception as e:
                self._row_failed(
                    report, "recovery.orphan_failed", e, application_id=application.id
                )

    async def _requeue_orphan(self, application: Application, report: RecoveryReport) -> None:
        application_id: int = application.id  # type: ignore[assignment]
        started_at = application.queue_started_at
        if started_at is None:
            report.orphans_skipped += 1
            logger.warning("recovery.orphan_without_start_marker", application_id=application_id)
            return

        async with await self.uow_factory() as uow:
            now = utcnow()
            if await uow.jobs.has_live_lease(application_id, now):
                report.orphans_skipped += 1
                logger.info("recovery.orphan_still_leased", application_id=application_id)
                return

            job = await uow.jobs.get_pending_for_application(application_id, lock=True)
            if job is not None and self.queue.lease_expired(job, now):
                if not await self.queue.reap_stalled(uow, job, now):
                    report.orphans_failed += 1
                    logger.error(
                        "recovery.orphan_attempts_exhausted",
                        application_id=application_id,
                        job_id=job.id,
                        attempts=job.attempts,
                    )
                    return

            requeued = await self.queue.enqueue_application(
                uow,
                application_id,
                expected=(ApplicationStatus.PROCESSING_DOCUMENTS,),
                priority=JobPriority.RETRY,
                guards=uow.applications.attempt_guards(started_at),
            )

        if requeued is None:
            report.orphans_skipped += 1
            logger.info("recovery.orphan_moved_on", application_id=application_id)
            return

        report.orphans_requeued += 1
        logger.warning(
            "recovery.orphan_requeued",
            application_id=application_id,
            job_id=requeued.queue_job_id,
            stale_started_at=started_at.isoformat(),
        )

    # Payments

    async def sweep_payments(self, report: RecoveryReport) -> None:
        """Seed drifted payments, close exhausted attempts, reconcile due ones."""
        now = utcnow()
        drift_before = now - timedelta(minutes=self.settings.payment_drift_threshold_minutes)
        due_before = now - timedelta(minutes=self.settings.payment_recovery_threshold_minutes)
        declined_since = now - timedelta(hours=self.settings.application_payment_window_hours)
        max_attempts = self.settings.payment_recovery_max_attempts

        async with await self.uow_factory() as uow:
            drifted = await uow.applications.find_payment_drift(
                drift_before, declined_since, self.batch_size
            )
            for application in drifted:
                if await uow.recovery_attempts.seed_pending(
                    application.id,  # type: ignore[arg-type]
                    application.payment_order_id,  # type: ignore[arg-type]
                ):
                    report.payments_seeded += 1

            exhausted = await uow.recovery_attempts.find_exhausted(max_attempts, self.batch_size)
            for attempt in exhausted:
                await uow.recovery_attempts.set_status(
                    attempt.id,  # type: ignore[arg-type]
                    RecoveryStatus.MAX_ATTEMPTS_REACHED,
                )
                report.payments_exhausted += 1
                logger.error(
                    "recovery.payment_attempts_exhausted",
                    application_id=attempt.application_id,
                    payment_intent_id=attempt.payment_intent_id,
                    attempt_count=attempt.attempt_count,
                    last_error=attempt.last_error,
                )

        async with await self.uow_factory() as uow:
            due = await uow.recovery_attempts.find_due(due_before, max_attempts, self.batch_size)

        for attempt in due:
            try:
                await self._reconcile_payment(attempt, report)
            except Exception as e:
                self._row_failed(
                    report,
                    "recovery.payment_failed",
                    e,
                    application_id=attempt.application_id,
                    payment_intent_id=attempt.payment_intent_id,
                )
                await self._record_attempt_error(attempt, e)

    async def _reconcile_payment(self, attempt: RecoveryAttempt, report: RecoveryReport) -> None:
        """Re-query one payment intent and apply what the processor says.

        The attempt counter is committed before the processor is called, so a
        crash mid-reconciliation still counts against the ceiling.
        """
        application_id = attempt.application_id
        intent_id = attempt.payment_intent_id
        log = logger.bind(application_id=application_id, payment_intent_id=intent_id)

        async with await self.uow_factory() as uow:
            recorded = await uow.recovery_attempts.record_attempt(application_id, intent_id)
            attempt_id: int = recorded.id  # type: ignore[assignment]
            application = await uow.applications.get_by_id(application_id)

            if application is None:
                await uow.recovery_attempts.set_status(
                    attempt_id, RecoveryStatus.FAILED, last_error="application not found"
                )
                report.payments_failed += 1
                return

            if not _awaits_settlement(application, intent_id):
                # Webhook (or an earlier sweep) already settled it
                settled = (
                    RecoveryStatus.FAILED
                    if application.status == ApplicationStatus.PAYMENT_FAILED
                    else RecoveryStatus.SUCCEEDED
                )
                await uow.recovery_attempts.set_status(attempt_id, settled)
                log.info("recovery.payment_already_settled", status=application.status.value)
                return

            declined = application.status == ApplicationStatus.PAYMENT_FAILED

        try:
            snapshot = await self.processor.get_payment(intent_id)
        except PaymentProcessorPermanentError as e:
            async with await self.uow_factory() as uow:
                await uow.recovery_attempts.set_status(
                    attempt_id, RecoveryStatus.FAILED, last_error=str(e)
                )
            report.payments_failed += 1
            log.error("recovery.payment_query_rejected", error=str(e))
            return

        async with await self.uow_factory() as uow:
            if snapshot.state == PaymentState.SUCCEEDED:
                await apply_payment_succeeded(uow, self.queue, application_id, intent_id)
                await uow.recovery_attempts.set_status(attempt_id, RecoveryStatus.SUCCEEDED)
                report.payments_recovered += 1
                log.info("recovery.payment_recovered", processor_status=snapshot.status)
            elif snapshot.state == PaymentState.FAILED:
                if not declined:
                    await apply_payment_failed(uow, application_id, intent_id)
                await uow.recovery_attempts.set_status(attempt_id, RecoveryStatus.FAILED)
                report.payments_failed += 1
                log.info("recovery.payment_declined", processor_status=snapshot.status)
            else:
                await uow.recovery_attempts.set_status(attempt_id, RecoveryStatus.PENDING)
                report.payments_pending += 1
                log.info(
                    "recovery.payment_still_pending",
                    processor_status=snapshot.status,
                    attempt_count=recorded.attempt_count,
                )

    async def _record_attempt_error(self, attempt: RecoveryAttempt, error: Exception) -> None:
        try:
            async with await self.uow_factory() as uow:
                current = await uow.recovery_attempts.get(
                    attempt.application_id, attempt.payment_intent_id
                )
                if current is not None and current.recovery_status in OPEN_RECOVERY_STATUSES:
                    await uow.recovery_attempts.set_status(
                        current.id,  # type: ignore[arg-type]
                        RecoveryStatus.PENDING,
                        last_error=f"{type(error).__name__}: {error}",
                    )
        except Exception as e:
            logger.error(
                "recovery.attempt_error_not_recorded",
                application_id=attempt.application_id,
                error=str(e),
                error_type=type(e).__name__,
            )

    # Expiration

    async def sweep_expirations(self, report: RecoveryReport) -> None:
        """Expire permits, unpaid vouchers and unpaid applications."""
        now = utcnow()
        async with await self.uow_factory() as uow:
            permit_ids = await uow.applications.find_expired_permits(now, self.batch_size)
            unpaid_ids = await uow.applications.find_unpaid_expired(now, self.batch_size)

        for application_id in permit_ids:
            try:
                async with await self.uow_factory() as uow:
                    if await uow.applications.expire_permit(application_id, now):
                        report.permits_expired += 1
                        logger.info("recovery.permit_expired", application_id=application_id)
            except Exception as e:
                self._row_failed(
                    report, "recovery.permit_expiry_failed", e, application_id=application_id
                )

        await self._sweep_vouchers(now, report)

        for application_id in unpaid_ids:
            try:
                async with await self.uow_factory() as uow:
                    if await uow.applications.expire_unpaid(application_id, now):
                        report.unpaid_expired += 1
                        logger.info("recovery.unpaid_expired", application_id=application_id)
            except Exception as e:
                self._row_failed(
                    report, "recovery.unpaid_expiry_failed", e, application_id=application_id
                )

    async def _sweep_vouchers(self, now, report: RecoveryReport) -> None:
        """Walk every awaiting-voucher row a page at a time."""
        after_id = 0
        while True:
            async with await self.uow_factory() as uow:
                page = await uow.applications.find_awaiting_voucher(self.batch_size, after_id)

            for application in page:
                try:
                    await self._expire_voucher(application, now, report)
                except Exception as e:
                    self._row_failed(
                        report, "recovery.voucher_expiry_failed", e, application_id=application.id
                    )

            if len(page) < self.batch_size:
                return
            after_id = page[-1].id  # type: ignore[assignment]

    async def _expire_voucher(self, application: Application, now, report: RecoveryReport) -> None:
        """Fail an OXXO application whose voucher expired unpaid.

        The voucher expiry lives on the latest voucher PaymentEvent; the
        application's own ``expires_at`` is the fallback.
        """
        application_id: int = application.id  # type: ignore[assignment]
        async with await self.uow_factory() as uow:
            voucher = await uow.payment_events.get_latest_voucher(application_id)
            deadline = voucher.voucher_expires_at if voucher else None
            if deadline is None:
                deadline = application.expires_at
            if deadline is None or deadline >= now:
                return

            updated = await uow.applications.fail_expired_voucher(application_id)
            if updated is None:
                return

            await uow.payment_events.append(
                PaymentEvent(
                    application_id=application_id,
                    event_type=VOUCHER_EXPIRED_EVENT,
                    order_id=updated.payment_order_id,
                    payload={
                        "voucherReference": updated.payment_reference,
                        "voucherExpiresAt": deadline.isoformat(),
                        "source": "recovery_sweep",
                    },
                )
            )
            if updated.payment_order_id:
                attempt = await uow.recovery_attempts.get(
                    application_id, updated.payment_order_id
                )
                if attempt is not None and attempt.recovery_status in OPEN_RECOVERY_STATUSES:
                    await uow.recovery_attempts.set_status(
                        attempt.id,  # type: ignore[arg-type]
                        RecoveryStatus.FAILED,
                        last_error="voucher expired",
                    )

        report.vouchers_expired += 1
        logger.info(
            "recovery.voucher_expired",
            application_id=application_id,
            voucher_expires_at=deadline.isoformat(),
        )

    # Housekeeping

    async def housekeeping(self, report: RecoveryReport) -> None:
        retention = timedelta(hours=self.settings.queue_job_retention_hours)
        attempt_cutoff = utcnow() - timedelta(days=self.settings.recovery_attempt_retention_days)
        async with await self.uow_factory() as uow:
            report.jobs_purged = await self.queue.purge_finished(uow, retention)
            report.attempts_purged = await uow.recovery_attempts.purge_finished(attempt_cutoff)
        if report.jobs_purged or report.attempts_purged:
            logger.info(
                "recovery.housekeeping",
                jobs_purged=report.jobs_purged,
                attempts_purged=report.attempts_purged,
            )


def build_recovery_scheduler(
    session_factory: Callable,
    settings: Settings,
    processor: Optional[PaymentProcessorClient] = None,
) -> RecoveryScheduler:
    return RecoveryScheduler(
        create_uow_factory(session_factory),
        JobQueue.from_settings(settings),
        processor
        or PaymentProcessorClient(
            settings.payment_api_key,
            base_url=settings.payment_api_base_url,
            timeout=settings.payment_api_timeout_seconds,
        ),
        settings,
    )


async def run_recovery_scheduler(
    session_factory: Callable,
    settings: Settings,
    processor: Optional[PaymentProcessorClient] = None,
) -> None:
    """Main entry point: run one recovery cycle every RECOVERY_INTERVAL_SECONDS.

    Worker lifecycle:
    - Starts with the FastAPI app (registered in lifespan)
    - Runs until asyncio.CancelledError (app shutdown)
    - A cycle runs to completion, then the scheduler sleeps

    Args:
        session_factory: Factory function that creates database sessions
        settings: Application settings (interval, thresholds, processor config)
        processor: Payment processor client (defaults to the HTTP client)
    """
    scheduler = build_recovery_scheduler(session_factory, settings, processor)
    interval = settings.recovery_interval_seconds

    logger.info("worker.started", worker="recovery_scheduler", interval_seconds=interval)

    try:
        while True:
            try:
                await scheduler.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "worker.error",
                    worker_type="recovery_scheduler",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info(
            "worker.stopped",
            worker="recovery_scheduler",
            message="Graceful shutdown requested",
        )
        raise
