"""Durable, priority-ordered generation job queue.

Backed by the ``generation_jobs`` table. Every method takes the caller's
UnitOfWork so queue changes commit or roll back together with the application
transition that caused them.

Lifecycle of a job::

    queued --claim_next--> active --complete--> completed
                             |
                             +--fail--> queued (priority RETRY, after backoff)
                             |     \\-> failed (attempts exhausted)
                             +--lease expires--> queued (counted as an attempt)
                                              \\-> failed (attempts exhausted)
"""

import math
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Iterable, Optional

import structlog
from sqlalchemy import ColumnElement

from permitflow.core.config import Settings
from permitflow.core.timezone import utcnow
from permitflow.models.application import Application, ApplicationStatus
from permitflow.models.generation_job import GenerationJob, JobPriority, JobStatus
from permitflow.models.system_state import QUEUE_PAUSED_KEY
from permitflow.uow import UnitOfWork

logger = structlog.get_logger(__name__)

RECENT_DURATION_SAMPLE = 20


@dataclass
class FailOutcome:
    """Result of failing an active job."""

    job: GenerationJob
    will_retry: bool
    retry_delay_seconds: Optional[int] = None


@dataclass
class QueueStats:
    depth: int
    delayed: int
    active: int
    completed: int
    failed: int
    paused: bool

    def as_dict(self) -> dict:
        return asdict(self)


class JobQueue:
    """Job queue operations (enqueue / claim / complete / fail / stats).

    The queue manages its own concurrency: claims lock the job row with
    SKIP LOCKED, so callers never lock the queue themselves.
    """

    def __init__(
        self,
        lease_seconds: int = 600,
        max_attempts: int = 3,
        backoff_seconds: Iterable[int] = (60, 120, 300),
        concurrency: int = 1,
        default_processing_seconds: int = 45,
    ):
        self.lease_seconds = lease_seconds
        self.max_attempts = max_attempts
        self.backoff_seconds = list(backoff_seconds) or [0]
        self.concurrency = max(concurrency, 1)
        self.default_processing_seconds = default_processing_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "JobQueue":
        return cls(
            lease_seconds=settings.queue_lease_seconds,
            max_attempts=settings.queue_max_attempts,
            backoff_seconds=settings.retry_backoff_schedule,
            concurrency=settings.worker_concurrency,
            default_processing_seconds=settings.queue_default_processing_seconds,
        )

    def backoff_for(self, attempts: int) -> int:
        """Delay before the next try after ``attempts`` failures."""
        index = min(max(attempts, 1), len(self.backoff_seconds)) - 1
        return self.backoff_seconds[index]

    async def enqueue(
        self, uow: UnitOfWork, application_id: int, priority: int = JobPriority.NORMAL
    ) -> GenerationJob:
        """Add a job for an application, or return its existing pending job.

        An existing queued job is raised to ``priority`` if that is more urgent.
        An active job whose lease already expired is put back to queued first;
        the stall counts as an attempt, and a job it exhausts is replaced.

        Args:
            uow: Unit of work the insert joins
            application_id: Application to generate documents for
            priority: JobPriority value (higher is claimed first)

        Returns:
            The new or existing pending job
        """
        now = utcnow()
        existing = await uow.jobs.get_pending_for_application(application_id, lock=True)
        if existing is not None and self.lease_expired(existing, now):
            if not await self.release_stalled(uow, existing, now):
                existing = None
        if existing is not None:
            if existing.status == JobStatus.QUEUED and priority > existing.priority:
                existing.priority = int(priority)
                existing.available_at = min(existing.available_at, now)
                uow.session.add(existing)
                await uow.session.flush()
            logger.info(
                "queue.enqueue.duplicate",
                application_id=application_id,
                job_id=existing.id,
                job_status=existing.status.value,
                priority=existing.priority,
            )
            return existing

        job = await uow.jobs.add(
            GenerationJob(
                application_id=application_id,
                priority=int(priority),
                max_attempts=self.max_attempts,
                available_at=now,
            )
        )
        logger.info(
            "queue.enqueued", application_id=application_id, job_id=job.id, priority=job.priority
        )
        return job

    async def enqueue_application(
        self,
        uow: UnitOfWork,
        application_id: int,
        expected: Iterable[ApplicationStatus] = (ApplicationStatus.PAYMENT_RECEIVED,),
        priority: int = JobPriority.NORMAL,
        guards: Iterable[ColumnElement[bool]] = (),
    ) -> Application | None:
        """Move an application to IN_QUEUE and enqueue its job in one transaction.

        The status transition runs first; its compare-and-swap is what keeps two
        racing callers from both enqueueing.

        Returns:
            The queued application, or None if it was not in an expected status
        """
        application = await uow.applications.mark_queued(
            application_id, expected, job_id=None, position=None, guards=guards
        )
        if application is None:
            return None

        job = await self.enqueue(uow, application_id, priority)
        position = await self.position_of(uow, job)
        return await uow.applications.attach_job(
            application_id, job.id, position  # type: ignore[arg-type]
        )

    async def claim_next(self, uow: UnitOfWork, worker_id: str) -> GenerationJob | None:
        """Lease the next claimable job.

        Returns nothing while the queue is paused. A job reclaimed from an
        expired lease has the stall counted first; one it exhausts is failed
        and the next job is tried.

        Args:
            uow: Unit of work; the lease is visible once it commits
            worker_id: Identifier of the claiming worker

        Returns:
            Leased job, or None if nothing is claimable
        """
        if await self.is_paused(uow):
            return None

        now = utcnow()
        while True:
            job = await uow.jobs.lock_next_visible(now)
            if job is None:
                return None
            reclaimed = job.status == JobStatus.ACTIVE
            if not reclaimed or await self.reap_stalled(uow, job, now):
                break

        job.status = JobStatus.ACTIVE
        job.worker_id = worker_id
        job.started_at = now
        job.finished_at = None
        job.leased_until = now + timedelta(seconds=self.lease_seconds)
        uow.session.add(job)
        await uow.session.flush()

        logger.info(
            "queue.claimed",
            job_id=job.id,
            application_id=job.application_id,
            worker_id=worker_id,
            priority=job.priority,
            attempts=job.attempts,
            reclaimed=reclaimed,
        )
        return job

    def lease_expired(self, job: GenerationJob, now) -> bool:
        return (
            job.status == JobStatus.ACTIVE
            and job.leased_until is not None
            and job.leased_until < now
        )

    async def release_stalled(self, uow: UnitOfWork, job: GenerationJob, now) -> bool:
        """Take back an expired lease and count it as a failed attempt.

        The job must be locked by the caller.

        Returns:
            True if the job is queued again, False if the stall exhausted it
            (the job is then failed)
        """
        stalled_worker = job.worker_id
        job.attempts += 1
        job.last_error = f"lease expired (worker {stalled_worker})"
        job.leased_until = None
        job.worker_id = None
        retry = job.attempts < job.max_attempts
        if retry:
            job.status = JobStatus.QUEUED
            job.available_at = now
        else:
            job.status = JobStatus.FAILED
            job.finished_at = now
        uow.session.add(job)
        await uow.session.flush()

        logger.warning(
            "queue.job_stalled",
            job_id=job.id,
            application_id=job.application_id,
            stalled_worker=stalled_worker,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            will_retry=retry,
        )
        return retry

    async def reap_stalled(self, uow: UnitOfWork, job: GenerationJob, now) -> bool:
        """Like ``release_stalled``; an exhausted job also fails its application.

        Returns:
            True if the job is queued again
        """
        if await self.release_stalled(uow, job, now):
            return True
        failed = await uow.applications.fail_stalled_generation(
            job.application_id,
            job.id,  # type: ignore[arg-type]
            f"Generation abandoned after {job.attempts} attempts: {job.last_error}",
        )
        logger.error(
            "queue.job_stalled.attempts_exhausted",
            job_id=job.id,
            application_id=job.application_id,
            application_failed=failed is not None,
        )
        return False

    async def _get_active(
        self, uow: UnitOfWork, job_id: int, worker_id: Optional[str]
    ) -> GenerationJob | None:
        """Active job leased by ``worker_id`` (any worker when None)."""
        job = await uow.jobs.get_by_id(job_id)
        if (
            job is None
            or job.status != JobStatus.ACTIVE
            or (worker_id is not None and job.worker_id != worker_id)
        ):
            logger.warning(
                "queue.job_not_active",
                job_id=job_id,
                job_status=job.status.value if job else None,
                lease_holder=job.worker_id if job else None,
                worker_id=worker_id,
            )
            return None
        return job

    async def complete(
        self, uow: UnitOfWork, job_id: int, worker_id: Optional[str] = None
    ) -> GenerationJob | None:
        """Mark an active job as completed."""
        job = await self._get_active(uow, job_id, worker_id)
        if job is None:
            return None
        job.status = JobStatus.COMPLETED
        job.finished_at = utcnow()
        job.leased_until = None
        job.last_error = None
        uow.session.add(job)
        await uow.session.flush()
        return job

    async def fail(
        self, uow: UnitOfWork, job_id: int, error: str, worker_id: Optional[str] = None
    ) -> FailOutcome | None:
        """Record a failed attempt and apply the retry policy.

        Query explanation:
        - attempts += 1
        - attempts < max_attempts: back to queued at RETRY priority, visible
          after the backoff for this attempt
        - otherwise: failed, never claimed again automatically

        Returns:
            FailOutcome, or None if the job was no longer active
        """
        job = await self._get_active(uow, job_id, worker_id)
        if job is None:
            return None

        now = utcnow()
        job.attempts += 1
        job.last_error = error[:1000]
        job.leased_until = None
        job.worker_id = None

        if job.attempts < job.max_attempts:
            delay = self.backoff_for(job.attempts)
            job.status = JobStatus.QUEUED
            job.priority = max(job.priority, int(JobPriority.RETRY))
            job.available_at = now + timedelta(seconds=delay)
            outcome = FailOutcome(job=job, will_retry=True, retry_delay_seconds=delay)
        else:
            job.status = JobStatus.FAILED
            job.finished_at = now
            outcome = FailOutcome(job=job, will_retry=False)

        uow.session.add(job)
        await uow.session.flush()
        return outcome

    async def discard(
        self, uow: UnitOfWork, application_id: int, reason: str, job_id: Optional[int] = None
    ) -> int:
        """Drop pending jobs of an application (all of them, or only ``job_id``)."""
        count = await uow.jobs.discard_pending(application_id, reason, utcnow(), job_id=job_id)
        if count:
            logger.info(
                "queue.discarded", application_id=application_id, count=count, reason=reason
            )
        return count

    async def stats(self, uow: UnitOfWork) -> QueueStats:
        """Depth / delayed / active / completed / failed counts for health reporting."""
        now = utcnow()
        counts = await uow.jobs.counts_by_status()
        delayed = await uow.jobs.count_delayed(now)
        queued = counts.get(JobStatus.QUEUED, 0)
        return QueueStats(
            depth=queued - delayed,
            delayed=delayed,
            active=counts.get(JobStatus.ACTIVE, 0),
            completed=counts.get(JobStatus.COMPLETED, 0),
            failed=counts.get(JobStatus.FAILED, 0),
            paused=await self.is_paused(uow),
        )

    async def is_paused(self, uow: UnitOfWork) -> bool:
        return await uow.system_state.get_flag(QUEUE_PAUSED_KEY)

    async def pause(self, uow: UnitOfWork) -> None:
        """Stop all workers from claiming new jobs; active jobs run to completion."""
        await uow.system_state.set_flag(QUEUE_PAUSED_KEY, True)
        logger.info("queue.paused")

    async def resume(self, uow: UnitOfWork) -> None:
        await uow.system_state.set_flag(QUEUE_PAUSED_KEY, False)
        logger.info("queue.resumed")

    async def position_of(self, uow: UnitOfWork, job: GenerationJob) -> int:
        """1-based position among queued jobs; 0 while the job is being processed."""
        if job.status == JobStatus.ACTIVE:
            return 0
        return await uow.jobs.count_ahead(job, utcnow()) + 1

    async def estimate_wait_seconds(self, uow: UnitOfWork, position: int) -> int:
        """ceil(position / concurrency) x average recent processing time."""
        durations = await uow.jobs.recent_durations_ms(RECENT_DURATION_SAMPLE)
        if durations:
            average = sum(durations) / len(durations) / 1000
        else:
            average = self.default_processing_seconds
        return int(math.ceil(max(position, 0) / self.concurrency) * average)

    async def purge_finished(self, uow: UnitOfWork, retention: timedelta) -> int:
        """Delete completed/failed jobs older than the retention window."""
        return await uow.jobs.purge_finished(utcnow() - retention)
