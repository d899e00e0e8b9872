"""GenerationJob repository for permitflow.

Provides data access for the job queue table with worker coordination via
FOR UPDATE SKIP LOCKED.
"""

from datetime import datetime

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from permitflow.models.generation_job import PENDING_JOB_STATUSES, GenerationJob, JobStatus


def _visible(now: datetime):
    """Claimable now: queued and due, or active with an expired lease."""
    return or_(
        and_(
            GenerationJob.status == JobStatus.QUEUED,  # type: ignore[arg-type]
            GenerationJob.available_at <= now,  # type: ignore[operator]
        ),
        and_(
            GenerationJob.status == JobStatus.ACTIVE,  # type: ignore[arg-type]
            GenerationJob.leased_until < now,  # type: ignore[operator]
        ),
    )


class GenerationJobRepository:
    """Repository for GenerationJob entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, job: GenerationJob) -> GenerationJob:
        """Persist new job to database.

        Args:
            job: GenerationJob entity to persist

        Returns:
            Persisted job with generated ID
        """
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: int) -> GenerationJob | None:
        """Retrieve job by ID.

        Args:
            job_id: Job's unique identifier

        Returns:
            GenerationJob if found, None otherwise
        """
        result = await self.session.execute(
            select(GenerationJob).where(GenerationJob.id == job_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_pending_for_application(
        self, application_id: int, lock: bool = False
    ) -> GenerationJob | None:
        """Retrieve the queued or active job of an application, if any.

        Args:
            application_id: Application's unique identifier
            lock: Take a FOR UPDATE lock on the job row

        Returns:
            Pending job if one exists, None otherwise
        """
        stmt = (
            select(GenerationJob)
            .where(
                GenerationJob.application_id == application_id,  # type: ignore[arg-type]
                GenerationJob.status.in_(PENDING_JOB_STATUSES),  # type: ignore[attr-defined]
            )
            .order_by(GenerationJob.created_at.desc())  # type: ignore[attr-defined]
            .limit(1)
        )
        if lock:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def lock_next_visible(self, now: datetime) -> GenerationJob | None:
        """Lock the next claimable job.

        Query explanation:
        - WHERE queued and due, OR active with an expired lease
        - ORDER BY priority DESC, created_at ASC: urgent first, then FIFO
        - LIMIT 1 FOR UPDATE SKIP LOCKED: concurrent claimers get different jobs

        Args:
            now: Current time

        Returns:
            Locked job, or None if nothing is claimable
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(_visible(now))
            .order_by(
                GenerationJob.priority.desc(),  # type: ignore[attr-defined]
                GenerationJob.created_at.asc(),  # type: ignore[attr-defined]
                GenerationJob.id.asc(),  # type: ignore[union-attr]
            )
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        return result.scalar_one_or_none()

    async def has_live_lease(self, application_id: int, now: datetime) -> bool:
        """True if an active job of this application holds an unexpired lease."""
        result = await self.session.execute(
            select(func.count())
            .select_from(GenerationJob)
            .where(
                GenerationJob.application_id == application_id,  # type: ignore[arg-type]
                GenerationJob.status == JobStatus.ACTIVE,  # type: ignore[arg-type]
                GenerationJob.leased_until >= now,  # type: ignore[operator]
            )
        )
        return result.scalar_one() > 0

    async def count_ahead(self, job: GenerationJob, now: datetime) -> int:
        """Number of visible queued jobs that will be claimed before ``job``."""
        result = await self.session.execute(
            select(func.count())
            .select_from(GenerationJob)
            .where(
                GenerationJob.status == JobStatus.QUEUED,  # type: ignore[arg-type]
                GenerationJob.available_at <= now,  # type: ignore[operator]
                GenerationJob.id != job.id,  # type: ignore[arg-type]
                or_(
                    GenerationJob.priority > job.priority,  # type: ignore[operator]
                    and_(
                        GenerationJob.priority == job.priority,  # type: ignore[arg-type]
                        GenerationJob.created_at < job.created_at,  # type: ignore[operator]
                    ),
                ),
            )
        )
        return result.scalar_one()

    async def counts_by_status(self) -> dict[JobStatus, int]:
        result = await self.session.execute(
            select(GenerationJob.status, func.count())  # type: ignore[call-overload]
            .group_by(GenerationJob.status)
        )
        return {JobStatus(status): count for status, count in result.all()}

    async def count_delayed(self, now: datetime) -> int:
        """Queued jobs waiting for their backoff to elapse."""
        result = await self.session.execute(
            select(func.count())
            .select_from(GenerationJob)
            .where(
                GenerationJob.status == JobStatus.QUEUED,  # type: ignore[arg-type]
                GenerationJob.available_at > now,  # type: ignore[operator]
            )
        )
        return result.scalar_one()

    async def recent_durations_ms(self, limit: int = 20) -> list[int]:
        """Processing durations of the most recently completed jobs."""
        result = await self.session.execute(
            select(GenerationJob.started_at, GenerationJob.finished_at)  # type: ignore[call-overload]
            .where(
                GenerationJob.status == JobStatus.COMPLETED,  # type: ignore[arg-type]
                GenerationJob.started_at.is_not(None),  # type: ignore[union-attr]
                GenerationJob.finished_at.is_not(None),  # type: ignore[union-attr]
            )
            .order_by(GenerationJob.finished_at.desc())  # type: ignore[union-attr]
            .limit(limit)
        )
        return [
            int((finished - started).total_seconds() * 1000) for started, finished in result.all()
        ]

    async def discard_pending(
        self, application_id: int, reason: str, now: datetime, job_id: int | None = None
    ) -> int:
        """Mark queued or active jobs of an application as failed.

        Args:
            application_id: Application whose jobs are discarded
            reason: Stored as the job's last_error
            now: Finish timestamp
            job_id: Restrict to this one job

        Returns:
            Number of jobs discarded
        """
        conditions = [
            GenerationJob.application_id == application_id,
            GenerationJob.status.in_(PENDING_JOB_STATUSES),  # type: ignore[attr-defined]
        ]
        if job_id is not None:
            conditions.append(GenerationJob.id == job_id)
        result = await self.session.execute(
            update(GenerationJob)
            .where(*conditions)
            .values(
                status=JobStatus.FAILED,
                last_error=reason[:1000],
                finished_at=now,
                leased_until=None,
            )
        )
        return result.rowcount  # type: ignore[attr-defined]

    async def purge_finished(self, older_than: datetime) -> int:
        """Delete completed/failed jobs finished before ``older_than``.

        Returns:
            Number of jobs deleted
        """
        result = await self.session.execute(
            delete(GenerationJob).where(
                GenerationJob.status.in_([JobStatus.COMPLETED, JobStatus.FAILED]),  # type: ignore[attr-defined]
                GenerationJob.finished_at < older_than,  # type: ignore[operator]
            )
        )
        return result.rowcount  # type: ignore[attr-defined]
