"""FastAPI application factory."""

import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from genorch.api.routes import generation, training
from genorch.core.config import Settings, configure_logging
from genorch.core.database import setup_db_session
from genorch.core.redis import create_redis_client
from genorch.services.features import FeatureFlags
from genorch.services.generation.limiter import QuotaLimiter
from genorch.services.generation.resources import ResourceResolver
from genorch.services.generation.safety import SafetyPipeline
from genorch.services.generation.service import GenerationService
from genorch.services.ledger.client import LedgerClient
from genorch.services.moderation.client import ModerationClient
from genorch.services.orchestrator.client import OrchestratorClient
from genorch.services.training.service import TrainingService
from genorch.uow import create_uow_factory
from genorch.workers.training_monitor import TrainingMonitor, run_training_monitor

logger = structlog.get_logger()


def create_resilient_worker(
    coro_func: Callable[[], Awaitable[None]], worker_name: str, shutdown_event: asyncio.Event
):
    """Create a worker with automatic restart on failure.

    Args:
        coro_func: Zero-argument coroutine function running the worker loop
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown

    Returns:
        Initial task handle (will be auto-recreated on crash)
    """
    RESTART_DELAY = 1  # Fixed 1 second delay between restarts

    def on_worker_done(task: asyncio.Task):
        # Check if shutdown was requested
        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

        # Check if task was cancelled (normal shutdown)
        if task.cancelled():
            logger.info("worker.cancelled", worker=worker_name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=RESTART_DELAY,
                exc_info=exc,
            )
        else:
            # Worker stopped cleanly (unexpected for infinite loop workers)
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=RESTART_DELAY,
            )

        async def restart_worker():
            await asyncio.sleep(RESTART_DELAY)

            # Check again if shutdown was requested during sleep
            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            new_task = asyncio.create_task(coro_func())
            new_task.add_done_callback(on_worker_done)

        asyncio.create_task(restart_worker())

    task = asyncio.create_task(coro_func())
    task.add_done_callback(on_worker_done)
    return task


def build_services(app: FastAPI, settings: Settings) -> None:
    """Wire clients and services into ``app.state``.

    Everything shares one Redis client and one session factory; the HTTP
    clients open a connection per call.
    """
    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    redis = create_redis_client(settings)

    orchestrator = OrchestratorClient(settings)
    ledger = LedgerClient(settings)
    features = FeatureFlags(redis, settings)
    resolver = ResourceResolver(uow_factory, redis, features, settings)
    safety = SafetyPipeline(ModerationClient(settings), features)
    limiter = QuotaLimiter(redis, uow_factory, features, settings)

    training_service = TrainingService(orchestrator, ledger, uow_factory, settings)

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.redis = redis
    app.state.generation_service = GenerationService(
        orchestrator, ledger, resolver, safety, limiter, features, uow_factory, settings
    )
    app.state.training_service = training_service
    app.state.training_monitor = TrainingMonitor(
        uow_factory, orchestrator, ledger, training_service, settings
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, build services, start the training monitor
    - Shutdown: Stop the monitor, close the Redis connection pool

    The monitor restarts automatically if its loop crashes.
    """
    settings = Settings()  # type: ignore[call-arg]

    configure_logging(settings)

    build_services(app, settings)

    shutdown_event = asyncio.Event()

    monitor_task = None
    if settings.training_monitor_enabled:
        monitor_task = create_resilient_worker(
            lambda: run_training_monitor(app.state.training_monitor, app.state.redis, settings),
            "training_monitor",
            shutdown_event,
        )

    logger.info("application.startup", db_url=settings.database_url.split("@")[-1])

    yield

    logger.info("application.shutdown")
    shutdown_event.set()

    if monitor_task is not None:
        monitor_task.cancel()
        # Wait for cancellation to complete (ignore CancelledError)
        await asyncio.gather(monitor_task, return_exceptions=True)

    await app.state.redis.aclose()


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Job Orchestration Core",
        description="Generation and training job submission, metering and lifecycle monitoring",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(generation.router)
    app.include_router(training.router)

    # Health check endpoint with database validation
    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy"} if database connection succeeds
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

    return app


# Create app instance for uvicorn
app = create_app()
