"""FastAPI application factory and background actor supervision."""

import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from permitflow.api.routes import admin, applications, webhooks
from permitflow.core import timezone  # noqa: F401
from permitflow.core.config import Settings, configure_logging
from permitflow.core.database import setup_db_session
from permitflow.services.queue import JobQueue
from permitflow.uow import create_uow_factory
from permitflow.workers.generation_worker import run_generation_worker
from permitflow.workers.recovery_scheduler import run_recovery_scheduler

logger = structlog.get_logger()

RESTART_DELAY_SECONDS = 1.0

ActorFactory = Callable[[], Awaitable[None]]


async def supervise(name: str, start: ActorFactory, shutdown_event: asyncio.Event) -> None:
    """Run a background actor forever, restarting it after a crash.

    Actor loops never return on their own; a clean return is logged and
    treated like a crash. Cancellation propagates so shutdown can stop the
    actor mid-iteration.
    """
    restarts = 0
    while not shutdown_event.is_set():
        try:
            await start()
            logger.warning("worker.stopped_unexpectedly", worker=name, restarts=restarts)
        except asyncio.CancelledError:
            logger.info("worker.cancelled", worker=name)
            raise
        except Exception as e:
            logger.error(
                "worker.crashed",
                worker=name,
                error=str(e),
                error_type=type(e).__name__,
                restarts=restarts,
                exc_info=e,
            )

        await asyncio.sleep(RESTART_DELAY_SECONDS)
        restarts += 1
        if not shutdown_event.is_set():
            logger.info("worker.restarting", worker=name, restarts=restarts)

    logger.info("worker.shutdown_complete", worker=name)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire the database, the queue and both background actors.

    Startup configures logging, builds the session and UoW factories and
    starts the generation worker pool and the recovery scheduler under
    ``supervise``. Shutdown cancels both and waits for them to unwind.
    """
    settings: Settings = app.state.settings
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    app.state.session_factory = session_factory
    app.state.uow_factory = create_uow_factory(session_factory)
    app.state.queue = JobQueue.from_settings(settings)

    shutdown_event = asyncio.Event()
    actors = {
        "generation": lambda: run_generation_worker(session_factory, settings),
        "recovery_scheduler": lambda: run_recovery_scheduler(session_factory, settings),
    }
    tasks = [
        asyncio.create_task(supervise(name, start, shutdown_event), name=name)
        for name, start in actors.items()
    ]

    logger.info(
        "application.startup",
        db_host=settings.database_url.split("@")[-1],
        worker_concurrency=settings.worker_concurrency,
        actors=list(actors),
    )

    try:
        yield
    finally:
        logger.info("application.shutdown")
        shutdown_event.set()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


async def _health(app: FastAPI) -> dict:
    async with await app.state.uow_factory() as uow:
        await uow.session.scalar(text("SELECT 1"))
        stats = await app.state.queue.stats(uow)
    return {"status": "healthy", "queue": stats.as_dict()}


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings to use (loaded from the environment when omitted)
    """
    settings = settings or Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Permitflow API",
        description="Permit payment, generation queue and recovery backend",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
    app.include_router(applications.router)
    app.include_router(admin.router)

    @app.get("/health")
    async def health_check(response: Response):
        """Database connectivity and queue stats; 503 when the database is unreachable."""
        try:
            return await _health(app)
        except Exception as e:
            logger.error("health_check.failed", error=str(e), error_type=type(e).__name__)
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {"type": type(e).__name__, "message": str(e)},
            }

    return app


app = create_app()
