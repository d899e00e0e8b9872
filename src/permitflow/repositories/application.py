"""Application repository for permitflow.

Every mutation of ``status`` / ``queue_status`` goes through ``transition()``, a
compare-and-swap update:

    UPDATE applications SET status = :new, ...
    WHERE id = :id AND status IN (:expected) [AND extra guards]
    RETURNING *

A miss (zero rows) returns None and is a benign race for the caller to log.
Transitions outside the state graph, or into an invalid status/queue_status
combination, raise InvalidStateTransition before touching the database.
"""

from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import ColumnElement, and_, func, or_, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from permitflow.core.timezone import utcnow
from permitflow.models.application import (
    ALLOWED_QUEUE_STATUSES,
    PRE_GENERATION_STATUSES,
    Application,
    ApplicationStatus,
    ErrorCategory,
    InvalidStateTransition,
    QueueStatus,
    can_transition,
    is_valid_combination,
)
from permitflow.services.exceptions import RowLockedError

# PostgreSQL "lock_not_available", raised by FOR UPDATE NOWAIT
LOCK_NOT_AVAILABLE = "55P03"

PAYABLE_STATUSES = (
    ApplicationStatus.AWAITING_PAYMENT,
    ApplicationStatus.AWAITING_OXXO_PAYMENT,
    ApplicationStatus.PAYMENT_PROCESSING,
)

# A declined payment may be retried or, for the same order, succeed late.
RETRYABLE_PAYMENT_STATUSES = (*PAYABLE_STATUSES, ApplicationStatus.PAYMENT_FAILED)


def _declined_order_guard(order_id: Optional[str]) -> ColumnElement[bool]:
    """SQL condition: row is not declined, or was declined for ``order_id``."""
    not_declined = Application.status != ApplicationStatus.PAYMENT_FAILED
    if not order_id:
        return not_declined  # type: ignore[return-value]
    return or_(not_declined, Application.payment_order_id == order_id)


def _queue_status_guard(status: ApplicationStatus) -> ColumnElement[bool]:
    """SQL condition: current queue_status is allowed alongside ``status``."""
    allowed = ALLOWED_QUEUE_STATUSES[status]
    values = [qs for qs in allowed if qs is not None]
    conditions = []
    if None in allowed:
        conditions.append(Application.queue_status.is_(None))  # type: ignore[union-attr]
    if values:
        conditions.append(Application.queue_status.in_(values))  # type: ignore[union-attr]
    return or_(*conditions)


class ApplicationRepository:
    """Repository for Application entities.

    Named transition methods below are fixed-shape updates: each one keeps its
    expected-status set and its field set side by side.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, application: Application) -> Application:
        """Persist new application to database.

        Args:
            application: Application entity to persist

        Returns:
            Persisted application with generated ID
        """
        self.session.add(application)
        await self.session.flush()
        return application

    async def get_by_id(self, application_id: int) -> Application | None:
        """Retrieve application by ID.

        Args:
            application_id: Application's unique identifier

        Returns:
            Application if found, None otherwise
        """
        result = await self.session.execute(
            select(Application).where(Application.id == application_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_by_order_id(self, order_id: str) -> Application | None:
        """Retrieve application by processor-issued order / payment intent id."""
        result = await self.session.execute(
            select(Application)
            .where(Application.payment_order_id == order_id)  # type: ignore[arg-type]
            .order_by(Application.id.desc())  # type: ignore[union-attr]
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def lock_nowait(self, application_id: int) -> Application | None:
        """Lock application row without waiting (SELECT ... FOR UPDATE NOWAIT).

        The lock is held until the surrounding transaction ends.

        Args:
            application_id: Application's unique identifier

        Returns:
            Locked application, or None if it does not exist

        Raises:
            RowLockedError: Another transaction already holds the row lock
        """
        try:
            result = await self.session.execute(
                select(Application)
                .where(Application.id == application_id)  # type: ignore[arg-type]
                .with_for_update(nowait=True)
                .execution_options(populate_existing=True)
            )
        except OperationalError as e:
            if getattr(e.orig, "sqlstate", None) == LOCK_NOT_AVAILABLE:
                raise RowLockedError(f"Application {application_id} is locked") from e
            raise
        return result.scalar_one_or_none()

    async def transition(
        self,
        application_id: int,
        expected: ApplicationStatus | Iterable[ApplicationStatus],
        new_status: ApplicationStatus,
        guards: Iterable[ColumnElement[bool]] = (),
        **changes: Any,
    ) -> Application | None:
        """Compare-and-swap status transition.

        Args:
            application_id: Application's unique identifier
            expected: Status (or set of statuses) the row must currently have
            new_status: Status to move to
            guards: Extra SQL conditions the row must satisfy
            **changes: Column values written in the same statement

        Returns:
            Updated application, or None if the row was not in an expected state

        Raises:
            InvalidStateTransition: Transition not in the state graph, or the
                resulting status/queue_status combination is invalid
        """
        if isinstance(expected, ApplicationStatus):
            expected_set = [expected]
        else:
            expected_set = list(expected)

        for current in expected_set:
            if not can_transition(current, new_status):
                raise InvalidStateTransition(
                    f"Cannot transition from {current.value} to {new_status.value}"
                )

        conditions = [
            Application.id == application_id,
            Application.status.in_(expected_set),  # type: ignore[attr-defined]
            *guards,
        ]
        if "queue_status" in changes:
            if not is_valid_combination(new_status, changes["queue_status"]):
                queue_status = changes["queue_status"]
                raise InvalidStateTransition(
                    f"queue_status={queue_status.value if queue_status else None} "
                    f"is not valid with status={new_status.value}"
                )
        else:
            conditions.append(_queue_status_guard(new_status))

        stmt = (
            update(Application)
            .where(and_(*conditions))
            .values(status=new_status, updated_at=utcnow(), **changes)
            .returning(Application)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    # Payment transitions

    async def mark_payment_processing(
        self, application_id: int, order_id: str
    ) -> Application | None:
        """Payment started at the processor (card authorising, 3DS pending).

        Also accepted after a decline, with the new order replacing the old one.
        """
        return await self.transition(
            application_id,
            RETRYABLE_PAYMENT_STATUSES,
            ApplicationStatus.PAYMENT_PROCESSING,
            payment_order_id=order_id,
        )

    async def mark_payment_received(
        self, application_id: int, order_id: Optional[str] = None
    ) -> Application | None:
        """Payment confirmed by the processor.

        A declined application only accepts the success of its own order.
        """
        changes: dict[str, Any] = {}
        if order_id:
            changes["payment_order_id"] = order_id
        return await self.transition(
            application_id,
            RETRYABLE_PAYMENT_STATUSES,
            ApplicationStatus.PAYMENT_RECEIVED,
            guards=[_declined_order_guard(order_id)],
            **changes,
        )

    async def mark_payment_failed(
        self, application_id: int, order_id: Optional[str] = None
    ) -> Application | None:
        """Payment declined, cancelled or voucher expired.

        With ``order_id``, a decline for an order the application has already
        replaced is ignored.
        """
        guards: list[ColumnElement[bool]] = []
        if order_id:
            guards.append(
                or_(
                    Application.payment_order_id.is_(None),  # type: ignore[union-attr]
                    Application.payment_order_id == order_id,
                )
            )
        return await self.transition(
            application_id, PAYABLE_STATUSES, ApplicationStatus.PAYMENT_FAILED, guards=guards
        )

    async def reopen_payment(
        self, application_id: int, expires_at: datetime
    ) -> Application | None:
        """Declined application goes back to checkout with a new payment window."""
        return await self.transition(
            application_id,
            ApplicationStatus.PAYMENT_FAILED,
            ApplicationStatus.AWAITING_PAYMENT,
            expires_at=expires_at,
        )

    async def mark_awaiting_voucher(
        self, application_id: int, order_id: Optional[str], reference: Optional[str]
    ) -> Application | None:
        """Cash voucher issued; waiting for the user to pay at the store.

        Voucher expiry and URL stay in the PaymentEvent payload.
        """
        changes: dict[str, Any] = {"payment_reference": reference}
        if order_id:
            changes["payment_order_id"] = order_id
        return await self.transition(
            application_id,
            RETRYABLE_PAYMENT_STATUSES,
            ApplicationStatus.AWAITING_OXXO_PAYMENT,
            **changes,
        )

    # Queue transitions

    async def mark_queued(
        self,
        application_id: int,
        expected: ApplicationStatus | Iterable[ApplicationStatus],
        job_id: Optional[int],
        position: Optional[int],
        guards: Iterable[ColumnElement[bool]] = (),
    ) -> Application | None:
        """Put application in the queue under ``job_id``.

        Clears the previous attempt's start marker so a stale worker cannot
        record an outcome afterwards.
        """
        now = utcnow()
        return await self.transition(
            application_id,
            expected,
            ApplicationStatus.IN_QUEUE,
            guards=guards,
            queue_status=QueueStatus.QUEUED,
            queue_job_id=job_id,
            queue_position=position,
            queue_entered_at=now,
            queue_started_at=None,
            queue_completed_at=None,
        )

    async def attach_job(
        self, application_id: int, job_id: int, position: Optional[int]
    ) -> Application | None:
        """Point a queued application at its job (status is not touched)."""
        result = await self.session.execute(
            update(Application)
            .where(
                Application.id == application_id,  # type: ignore[arg-type]
                Application.queue_status == QueueStatus.QUEUED,  # type: ignore[arg-type]
            )
            .values(queue_job_id=job_id, queue_position=position)
            .returning(Application)
        )
        return result.scalar_one_or_none()

    async def claim_for_generation(
        self, application_id: int, expected: ApplicationStatus, job_id: int, started_at: datetime
    ) -> Application | None:
        """Mark the row as owned by a generation attempt.

        Must run in the transaction holding the row lock from ``lock_nowait``.
        """
        if expected in PRE_GENERATION_STATUSES:
            guards = [
                Application.queue_status.in_(  # type: ignore[union-attr]
                    [QueueStatus.QUEUED, QueueStatus.FAILED]
                )
            ]
        else:
            # Takeover of an expired attempt that belonged to this same job
            guards = [Application.queue_job_id == job_id]
        return await self.transition(
            application_id,
            expected,
            ApplicationStatus.PROCESSING_DOCUMENTS,
            guards=guards,
            queue_status=QueueStatus.PROCESSING,
            queue_job_id=job_id,
            queue_started_at=started_at,
            queue_position=None,
        )

    def attempt_guards(self, started_at: datetime) -> list[ColumnElement[bool]]:
        return [
            Application.queue_status == QueueStatus.PROCESSING,
            Application.queue_started_at == started_at,
        ]

    async def record_generation_success(
        self,
        application_id: int,
        started_at: datetime,
        artifacts: dict[str, str],
        folio: Optional[str],
        issued_at: Optional[datetime],
        expires_at: Optional[datetime],
    ) -> Application | None:
        """Write all outputs of a successful attempt in one statement.

        Args:
            application_id: Application's unique identifier
            started_at: ``queue_started_at`` written by this attempt's claim
            artifacts: Paths keyed by permit / receipt / certificate / plate
            folio: Official permit folio number
            issued_at: Permit issue date
            expires_at: Permit validity end

        Returns:
            Updated application, or None if this attempt no longer owns the row
        """
        now = utcnow()
        return await self.transition(
            application_id,
            ApplicationStatus.PROCESSING_DOCUMENTS,
            ApplicationStatus.PERMIT_READY,
            guards=self.attempt_guards(started_at),
            queue_status=QueueStatus.COMPLETED,
            queue_completed_at=now,
            queue_duration=int((now - started_at).total_seconds() * 1000),
            queue_error=None,
            permit_file_path=artifacts.get("permit"),
            receipt_file_path=artifacts.get("receipt"),
            certificate_file_path=artifacts.get("certificate"),
            plate_file_path=artifacts.get("plate"),
            folio=folio,
            issued_at=issued_at,
            permit_expires_at=expires_at,
            error_message=None,
            error_category=None,
        )

    async def record_generation_failure(
        self,
        application_id: int,
        started_at: datetime,
        message: str,
        category: ErrorCategory,
        screenshot_path: Optional[str],
    ) -> Application | None:
        """Write the categorized failure of an attempt and bump ``retry_count``."""
        now = utcnow()
        return await self.transition(
            application_id,
            ApplicationStatus.PROCESSING_DOCUMENTS,
            ApplicationStatus.ERROR_GENERATING_PERMIT,
            guards=self.attempt_guards(started_at),
            queue_status=QueueStatus.FAILED,
            queue_completed_at=now,
            queue_duration=int((now - started_at).total_seconds() * 1000),
            queue_error=message[:1000],
            error_message=message[:1000],
            error_category=category,
            error_at=now,
            screenshot_path=screenshot_path,
            retry_count=Application.retry_count + 1,
        )

    async def fail_stalled_generation(
        self, application_id: int, job_id: int, message: str
    ) -> Application | None:
        """The application's job ran out of attempts by losing its lease.

        Only applies while the row still points at ``job_id``.
        """
        now = utcnow()
        return await self.transition(
            application_id,
            (ApplicationStatus.IN_QUEUE, ApplicationStatus.PROCESSING_DOCUMENTS),
            ApplicationStatus.ERROR_GENERATING_PERMIT,
            guards=[Application.queue_job_id == job_id],
            queue_status=QueueStatus.FAILED,
            queue_position=None,
            queue_completed_at=now,
            queue_error=message[:1000],
            error_message=message[:1000],
            error_category=ErrorCategory.UNKNOWN,
            error_at=now,
            retry_count=Application.retry_count + 1,
        )

    async def find_orphaned(self, stale_before: datetime, limit: int) -> list[Application]:
        """Rows in ``processing`` whose attempt started before ``stale_before``."""
        result = await self.session.execute(
            select(Application)
            .where(
                Application.status == ApplicationStatus.PROCESSING_DOCUMENTS,  # type: ignore[arg-type]
                Application.queue_status == QueueStatus.PROCESSING,  # type: ignore[arg-type]
                Application.queue_started_at < stale_before,  # type: ignore[operator]
            )
            .order_by(Application.queue_started_at.asc())  # type: ignore[union-attr]
            .limit(limit)
        )
        return list(result.scalars().all())

    # Expiration

    async def find_expired_permits(self, now: datetime, limit: int) -> list[int]:
        result = await self.session.execute(
            select(Application.id)  # type: ignore[call-overload]
            .where(
                Application.status == ApplicationStatus.PERMIT_READY,  # type: ignore[arg-type]
                Application.permit_expires_at < now,  # type: ignore[operator]
            )
            .limit(limit)
        )
        return list(result.scalars().all())

    async def expire_permit(self, application_id: int, now: datetime) -> Application | None:
        """Permit validity window elapsed."""
        return await self.transition(
            application_id,
            ApplicationStatus.PERMIT_READY,
            ApplicationStatus.EXPIRED,
            guards=[Application.permit_expires_at < now],  # type: ignore[list-item,operator]
        )

    async def find_unpaid_expired(self, now: datetime, limit: int) -> list[int]:
        result = await self.session.execute(
            select(Application.id)  # type: ignore[call-overload]
            .where(
                Application.status == ApplicationStatus.AWAITING_PAYMENT,  # type: ignore[arg-type]
                Application.expires_at < now,  # type: ignore[operator]
            )
            .limit(limit)
        )
        return list(result.scalars().all())

    async def expire_unpaid(self, application_id: int, now: datetime) -> Application | None:
        """Application was never paid within its payment window."""
        return await self.transition(
            application_id,
            ApplicationStatus.AWAITING_PAYMENT,
            ApplicationStatus.EXPIRED,
            guards=[Application.expires_at < now],  # type: ignore[list-item,operator]
        )

    async def find_awaiting_voucher(self, limit: int, after_id: int = 0) -> list[Application]:
        """One page of cash-voucher rows, keyed by id.

        Voucher deadlines live in event payloads, so callers page through every
        row with ``after_id`` and check each deadline themselves.
        """
        result = await self.session.execute(
            select(Application)
            .where(
                Application.status == ApplicationStatus.AWAITING_OXXO_PAYMENT,  # type: ignore[arg-type]
                Application.id > after_id,  # type: ignore[operator]
            )
            .order_by(Application.id.asc())  # type: ignore[union-attr]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def fail_expired_voucher(self, application_id: int) -> Application | None:
        """Cash voucher expired unpaid."""
        return await self.transition(
            application_id,
            ApplicationStatus.AWAITING_OXXO_PAYMENT,
            ApplicationStatus.PAYMENT_FAILED,
        )

    async def find_payment_drift(
        self, stale_before: datetime, declined_since: datetime, limit: int
    ) -> list[Application]:
        """Payment-pending rows with an order id and no update since ``stale_before``.

        Declined rows count too while their decline is newer than
        ``declined_since``; the processor may still settle the same order.
        """
        pending = Application.status.in_(  # type: ignore[attr-defined]
            [ApplicationStatus.PAYMENT_PROCESSING, ApplicationStatus.AWAITING_OXXO_PAYMENT]
        )
        recently_declined = and_(
            Application.status == ApplicationStatus.PAYMENT_FAILED,
            Application.updated_at >= declined_since,  # type: ignore[operator]
        )
        result = await self.session.execute(
            select(Application)
            .where(
                or_(pending, recently_declined),
                Application.payment_order_id.is_not(None),  # type: ignore[union-attr]
                Application.updated_at < stale_before,  # type: ignore[operator]
            )
            .order_by(Application.updated_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    # Admin

    async def cancel(
        self, application_id: int, expected: ApplicationStatus
    ) -> Application | None:
        """Cancel a non-terminal application that no worker currently owns."""
        changes: dict[str, Any] = {"queue_status": None}
        if expected == ApplicationStatus.ERROR_GENERATING_PERMIT:
            changes["queue_status"] = QueueStatus.FAILED
        if expected == ApplicationStatus.IN_QUEUE:
            changes["queue_position"] = None
        return await self.transition(
            application_id, expected, ApplicationStatus.CANCELLED, **changes
        )

    async def resolve_manually(
        self, application_id: int, expected: ApplicationStatus, notes: str, resolved_by: str
    ) -> Application | None:
        """Record manual handling; status is left as it is."""
        return await self.transition(
            application_id,
            expected,
            expected,
            resolution_notes=notes,
            resolved_by=resolved_by,
            resolved_at=utcnow(),
        )

    async def count_by_status(self) -> dict[str, int]:
        result = await self.session.execute(
            select(Application.status, func.count())  # type: ignore[call-overload]
            .group_by(Application.status)
        )
        return {
            (status.value if isinstance(status, ApplicationStatus) else status): count
            for status, count in result.all()
        }
