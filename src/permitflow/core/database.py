"""Async engine and session factory."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def setup_db_session(db_url: str, pool_size: int = 20) -> async_sessionmaker[AsyncSession]:
    """Create the session factory every UnitOfWork draws from.

    Each worker slot holds one connection while it claims a job or writes an
    outcome, and the webhook handler and the scheduler need their own, so
    ``pool_size`` must be at least ``WORKER_CONCURRENCY + 2``. There is no
    overflow: a saturated pool makes callers wait instead of opening more
    connections than configured.
    """
    engine = create_async_engine(db_url, pool_size=pool_size, max_overflow=0, pool_pre_ping=True)

    # Rows are read after commit by workers and routes
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
