"""Generation worker: claims jobs and drives one generation attempt at a time.

Each worker slot runs its own polling loop; ``run_generation_worker`` starts
WORKER_CONCURRENCY slots. One attempt goes through three short transactions
and one long call that holds no transaction at all:

1. Claim: lease the next job (SKIP LOCKED), commit.
2. Ownership: lock the application row with FOR UPDATE NOWAIT. If the lock is
   busy, abandon and let the lease expire. Otherwise re-check eligibility and
   write the processing marker (queue_status=processing, queue_started_at) with
   a compare-and-swap update, commit.
3. Generate: call the external service under a hard deadline.
4. Outcome: one compare-and-swap update guarded by the marker from step 2,
   together with complete()/fail() on the job, commit. A worker whose lease
   was reclaimed still settles the job if it kept the marker.

An attempt that loses its marker (the recovery sweep reset it, or a later
attempt took over) writes nothing.
"""

import asyncio
import os
import socket
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import structlog

from permitflow.core.config import Settings
from permitflow.core.timezone import utcnow
from permitflow.models.application import (
    PRE_GENERATION_STATUSES,
    Application,
    ApplicationStatus,
    ErrorCategory,
    QueueStatus,
)
from permitflow.models.generation_job import GenerationJob
from permitflow.services.exceptions import GenerationError, RowLockedError
from permitflow.services.generation.client import (
    DocumentGenerator,
    GenerationResult,
    HttpDocumentGenerator,
)
from permitflow.services.generation.error_classifier import classify_generation_error
from permitflow.services.queue import JobQueue
from permitflow.uow import UnitOfWork, create_uow_factory

logger = structlog.get_logger(__name__)


@dataclass
class AttemptFailure:
    message: str
    category: ErrorCategory
    diagnostic_path: Optional[str] = None


@dataclass
class AttemptOutcome:
    """What one processed job ended as (used by logs and tests)."""

    job_id: int
    application_id: int
    result: str  # succeeded | failed | abandoned | discarded | conflict
    will_retry: bool = False
    details: dict = field(default_factory=dict)


def default_worker_id(slot: int) -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{slot}"


def build_generation_payload(application: Application) -> dict:
    return {
        "applicationId": application.id,
        "applicant": application.applicant_data,
        "renewedFromId": application.renewed_from_id,
    }


class GenerationWorker:
    """One worker slot."""

    def __init__(
        self,
        uow_factory: Callable,
        queue: JobQueue,
        generator: DocumentGenerator,
        worker_id: str,
        generation_timeout: float = 300.0,
        poll_interval: float = 1.0,
    ):
        self.uow_factory = uow_factory
        self.queue = queue
        self.generator = generator
        self.worker_id = worker_id
        self.generation_timeout = generation_timeout
        self.poll_interval = poll_interval

    async def run_once(self) -> AttemptOutcome | None:
        """Claim and process at most one job.

        Returns:
            Outcome of the processed job, or None if nothing was claimable
        """
        async with await self.uow_factory() as uow:
            job = await self.queue.claim_next(uow, self.worker_id)
        if job is None:
            return None
        return await self.process_job(job)

    async def process_job(self, job: GenerationJob) -> AttemptOutcome:
        """Drive one generation attempt for a leased job."""
        job_id: int = job.id  # type: ignore[assignment]
        log = logger.bind(
            job_id=job_id, application_id=job.application_id, worker_id=self.worker_id
        )

        try:
            async with await self.uow_factory() as uow:
                claimed = await self._take_ownership(uow, job)
        except RowLockedError:
            log.info("generation.lock_busy")
            return AttemptOutcome(job_id, job.application_id, "abandoned")

        if claimed is None:
            return AttemptOutcome(job_id, job.application_id, "discarded")

        started_at = claimed.queue_started_at
        if started_at is None:
            log.error("generation.claim_without_start_marker")
            return AttemptOutcome(job_id, job.application_id, "conflict")
        log.info(
            "generation.started",
            attempt_number=job.attempts + 1,
            retry_count=claimed.retry_count,
        )
        start_time = time.monotonic()

        result, failure = await self._generate(claimed)
        duration = time.monotonic() - start_time

        if failure is None:
            return await self._record_success(
                job, claimed, started_at, result, duration  # type: ignore[arg-type]
            )
        return await self._record_failure(job, claimed, started_at, failure, duration)

    async def _take_ownership(self, uow: UnitOfWork, job: GenerationJob) -> Application | None:
        """Lock the row without waiting, re-validate, and write the processing marker.

        Returns:
            The claimed application, or None if the job was discarded

        Raises:
            RowLockedError: Another transaction holds the row lock
        """
        application = await uow.applications.lock_nowait(job.application_id)
        if application is None:
            await self.queue.discard(
                uow, job.application_id, "application not found", job_id=job.id
            )
            return None

        if not self._is_eligible(application, job):
            logger.info(
                "generation.ineligible",
                job_id=job.id,
                application_id=application.id,
                status=application.status.value,
                queue_status=(
                    application.queue_status.value if application.queue_status else None
                ),
            )
            await self.queue.discard(
                uow,
                job.application_id,
                f"ineligible status {application.status.value}",
                job_id=job.id,
            )
            return None

        claimed = await uow.applications.claim_for_generation(
            application.id,  # type: ignore[arg-type]
            application.status,
            job.id,  # type: ignore[arg-type]
            started_at=utcnow(),
        )
        if claimed is None:
            logger.info(
                "generation.claim_conflict", job_id=job.id, application_id=application.id
            )
        return claimed

    def _is_eligible(self, application: Application, job: GenerationJob) -> bool:
        if application.status in PRE_GENERATION_STATUSES:
            return application.queue_status in (QueueStatus.QUEUED, QueueStatus.FAILED)
        # Lease of this same job expired mid-attempt: take the attempt over
        return (
            application.status == ApplicationStatus.PROCESSING_DOCUMENTS
            and application.queue_job_id == job.id
        )

    async def _generate(
        self, application: Application
    ) -> tuple[GenerationResult | None, AttemptFailure | None]:
        """Call the generator under the hard deadline and normalize failures."""
        try:
            result = await asyncio.wait_for(
                self.generator.generate(build_generation_payload(application)),
                timeout=self.generation_timeout,
            )
        except asyncio.TimeoutError:
            return None, AttemptFailure(
                f"Generation timeout after {self.generation_timeout}s", ErrorCategory.TIMEOUT
            )
        except GenerationError as e:
            category = e.category
            if category == ErrorCategory.UNKNOWN:
                category = classify_generation_error(str(e))
            return None, AttemptFailure(str(e), category, e.diagnostic_path)
        except Exception as e:
            message = f"{type(e).__name__}: {e}"
            return None, AttemptFailure(message, classify_generation_error(message))

        if not result.success:
            message = result.error_message or "Generation failed"
            return result, AttemptFailure(
                message,
                classify_generation_error(message, result.error_code),
                result.diagnostic_artifact_path,
            )

        missing = result.missing_artifacts
        if missing:
            return result, AttemptFailure(
                f"Generation returned incomplete artifacts, missing: {', '.join(missing)}",
                ErrorCategory.UNKNOWN,
            )
        return result, None

    async def _record_success(
        self,
        job: GenerationJob,
        application: Application,
        started_at,
        result: GenerationResult,
        duration: float,
    ) -> AttemptOutcome:
        job_id: int = job.id  # type: ignore[assignment]
        async with await self.uow_factory() as uow:
            updated = await uow.applications.record_generation_success(
                application.id,  # type: ignore[arg-type]
                started_at,
                artifacts=result.artifacts,
                folio=result.folio,
                issued_at=result.issued_at,
                expires_at=result.expires_at,
            )
            if updated is None:
                logger.warning(
                    "generation.outcome_conflict",
                    job_id=job_id,
                    application_id=application.id,
                    outcome="succeeded",
                )
                return AttemptOutcome(job_id, job.application_id, "conflict")
            # The attempt marker, not the lease, proves ownership here
            await self.queue.complete(uow, job_id)

        logger.info(
            "generation.succeeded",
            job_id=job_id,
            application_id=application.id,
            folio=result.folio,
            duration_seconds=round(duration, 3),
        )
        return AttemptOutcome(job_id, job.application_id, "succeeded")

    async def _record_failure(
        self,
        job: GenerationJob,
        application: Application,
        started_at,
        failure: AttemptFailure,
        duration: float,
    ) -> AttemptOutcome:
        job_id: int = job.id  # type: ignore[assignment]
        async with await self.uow_factory() as uow:
            updated = await uow.applications.record_generation_failure(
                application.id,  # type: ignore[arg-type]
                started_at,
                message=failure.message,
                category=failure.category,
                screenshot_path=failure.diagnostic_path,
            )
            if updated is None:
                logger.warning(
                    "generation.outcome_conflict",
                    job_id=job_id,
                    application_id=application.id,
                    outcome="failed",
                )
                return AttemptOutcome(job_id, job.application_id, "conflict")
            outcome = await self.queue.fail(uow, job_id, failure.message)

        will_retry = bool(outcome and outcome.will_retry)
        log_fields = dict(
            job_id=job_id,
            application_id=application.id,
            error_category=failure.category.value,
            error_message=failure.message,
            retry_count=updated.retry_count,
            duration_seconds=round(duration, 3),
        )
        if will_retry:
            logger.warning(
                "generation.failed.retry_scheduled",
                retry_in_seconds=outcome.retry_delay_seconds,  # type: ignore[union-attr]
                **log_fields,
            )
        else:
            logger.error("generation.failed.retries_exhausted", **log_fields)

        return AttemptOutcome(
            job_id,
            job.application_id,
            "failed",
            will_retry=will_retry,
            details={"category": failure.category.value},
        )

    async def run_forever(self) -> None:
        """Poll loop; errors are logged and the loop continues."""
        logger.info("worker.started", worker_id=self.worker_id)
        try:
            while True:
                try:
                    outcome = await self.run_once()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(
                        "worker.iteration_failed",
                        worker_id=self.worker_id,
                        error=str(e),
                        error_type=type(e).__name__,
                        exc_info=True,
                    )
                    outcome = None
                if outcome is None:
                    await asyncio.sleep(self.poll_interval)
        except asyncio.CancelledError:
            logger.info("worker.stopped", worker_id=self.worker_id)
            raise


async def run_generation_worker(
    session_factory: Callable,
    settings: Settings,
    generator: Optional[DocumentGenerator] = None,
) -> None:
    """Main entry point: run WORKER_CONCURRENCY worker slots until cancelled.

    Args:
        session_factory: Factory function that creates database sessions
        settings: Application settings (pool size, timeouts, generation service)
        generator: Document generator (defaults to the HTTP service client)
    """
    uow_factory = create_uow_factory(session_factory)
    queue = JobQueue.from_settings(settings)
    generator = generator or HttpDocumentGenerator(
        settings.generation_service_url,
        token=settings.generation_service_token,
        timeout=settings.generation_timeout_seconds,
    )

    workers = [
        GenerationWorker(
            uow_factory,
            queue,
            generator,
            worker_id=default_worker_id(slot),
            generation_timeout=settings.generation_timeout_seconds,
            poll_interval=settings.poll_interval_seconds,
        )
        for slot in range(settings.worker_concurrency)
    ]
    logger.info(
        "worker.pool_started",
        concurrency=len(workers),
        poll_interval=settings.poll_interval_seconds,
        generation_timeout=settings.generation_timeout_seconds,
    )
    await asyncio.gather(*(worker.run_forever() for worker in workers))
