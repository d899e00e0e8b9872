"""pytest fixtures for permitflow tests.

Provides:
- postgres_container: Session-scoped testcontainer PostgreSQL instance (migrated)
- utc_timezone: Autouse fixture enforcing UTC timezone
- session: Function-scoped database session with table truncation
- uow_factory: Function-scoped UnitOfWork factory
- queue / make_application: Shared builders for queue and application rows
"""

import os
import subprocess
import sys
from pathlib import Path
from typing import AsyncGenerator

# Settings skip secret validation in tests; must be set before permitflow.app is imported
os.environ.setdefault("APP_ENV", "test")

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from testcontainers.postgres import PostgresContainer

from permitflow.core.database import setup_db_session
from permitflow.models.application import Application, ApplicationStatus
from permitflow.services.queue import JobQueue
from permitflow.uow import create_uow_factory

PROJECT_ROOT = Path(__file__).resolve().parent.parent

TABLES = (
    "generation_jobs",
    "recovery_attempts",
    "payment_events",
    "webhook_receipts",
    "system_state",
    "applications",
)


@pytest.fixture(scope="session")
def postgres_container():
    """Provide session-scoped PostgreSQL container with migrations applied.

    Container starts once per test session and is reused across all tests.
    Migrations are applied using subprocess to avoid asyncio event loop conflicts.
    Tests that need the database are skipped when no container runtime is available.
    """
    try:
        container = PostgresContainer(
            image="postgres:17",
            username="test",
            password="test",
            dbname="test_permitflow",
        ).with_bind_ports(5432, None)
        container.start()
    except Exception as e:
        pytest.skip(f"PostgreSQL container unavailable: {e}")

    try:
        db_url = container.get_connection_url(driver="psycopg")

        # Set DATABASE_URL environment variable for alembic env.py
        env = os.environ.copy()
        env["DATABASE_URL"] = db_url

        subprocess.run(
            [sys.executable, "-m", "alembic", "upgrade", "head"],
            check=True,
            capture_output=True,
            text=True,
            env=env,
            cwd=PROJECT_ROOT,
        )

        yield container
    finally:
        container.stop()


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest_asyncio.fixture(scope="function")
async def session(postgres_container) -> AsyncGenerator[AsyncSession, None]:
    """Provide function-scoped database session with table truncation.

    Each test gets a fresh session with empty tables (truncated between tests).
    """
    db_url = postgres_container.get_connection_url(driver="psycopg")
    session_factory = setup_db_session(db_url, pool_size=5)

    async with session_factory() as session:
        yield session

        # Rollback any uncommitted changes from the test
        await session.rollback()

        await session.execute(text(f"TRUNCATE {', '.join(TABLES)} RESTART IDENTITY CASCADE"))
        await session.commit()

    await session.bind.dispose()  # type: ignore[union-attr]


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session: AsyncSession):
    """Provide function-scoped UnitOfWork factory.

    Returns a callable that creates UoW instances on the test session's engine.
    """
    session_factory = async_sessionmaker(
        bind=session.bind,
        expire_on_commit=False,
    )
    return create_uow_factory(session_factory)


@pytest.fixture
def queue() -> JobQueue:
    """Queue with the documented retry schedule and two workers."""
    return JobQueue(
        lease_seconds=600,
        max_attempts=3,
        backoff_seconds=(60, 120, 300),
        concurrency=2,
        default_processing_seconds=45,
    )


@pytest.fixture
def make_application(uow_factory):
    """Build and persist an application; keyword arguments override fields."""

    async def _make(**fields) -> Application:
        fields.setdefault("status", ApplicationStatus.AWAITING_PAYMENT)
        fields.setdefault("applicant_data", {"name": "Ana Torres", "vin": "3VWFE21C04M000001"})
        async with await uow_factory() as uow:
            return await uow.applications.add(Application(**fields))

    return _make
