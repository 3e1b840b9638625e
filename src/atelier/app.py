"""FastAPI application factory."""

import asyncio
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, Response, status
from sqlalchemy import text

from atelier.api.routes import workers
from atelier.core import timezone  # noqa: F401
from atelier.core.config import Settings, configure_logging
from atelier.core.database import setup_db_session
from atelier.uow import create_uow_factory
from atelier.workers.context import JobContext, build_job_context
from atelier.workers.scheduler import LocalScheduler
from atelier.workers.sweep_worker import run_sweep_worker

logger = structlog.get_logger()


def create_resilient_worker(
    coro_func, ctx: JobContext, worker_name: str, shutdown_event: asyncio.Event
):
    """Create a worker with automatic restart on failure.

    Args:
        coro_func: Worker coroutine function (e.g., run_sweep_worker)
        ctx: Job context passed to the worker
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown

    Returns:
        Initial task handle (will be auto-recreated on crash)
    """
    RESTART_DELAY = 1

    def on_worker_done(task: asyncio.Task):
        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

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
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=RESTART_DELAY,
            )

        async def restart_worker():
            await asyncio.sleep(RESTART_DELAY)
            if shutdown_event.is_set():
                return
            logger.info("worker.restarting", worker=worker_name)
            new_task = asyncio.create_task(coro_func(ctx))
            new_task.add_done_callback(on_worker_done)
            app_tasks.add(new_task)
            new_task.add_done_callback(app_tasks.discard)

        asyncio.create_task(restart_worker())

    app_tasks: set[asyncio.Task] = set()
    task = asyncio.create_task(coro_func(ctx))
    task.add_done_callback(on_worker_done)
    return task


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    - Startup: configure logging, database, shared HTTP client, job context
      and the periodic reconciliation sweep
    - Shutdown: stop the sweep, let in-process jobs finish, close resources
    """
    settings = app.state.settings
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    http_client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
    ctx = build_job_context(settings, uow_factory, http_client=http_client)

    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.job_context = ctx

    shutdown_event = asyncio.Event()
    sweep_task = None
    if settings.sweep_interval_seconds > 0:
        sweep_task = create_resilient_worker(run_sweep_worker, ctx, "sweep", shutdown_event)

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        scheduler=settings.scheduler_backend,
    )

    yield

    shutdown_event.set()
    if sweep_task is not None:
        sweep_task.cancel()
        await asyncio.gather(sweep_task, return_exceptions=True)

    if isinstance(ctx.scheduler, LocalScheduler) and ctx.scheduler.pending:
        logger.info("application.draining_jobs", pending=ctx.scheduler.pending)
        await ctx.scheduler.drain()

    await http_client.aclose()
    await session_factory.kw["bind"].dispose()
    logger.info("application.shutdown")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Explicit settings (tests); loaded from the environment when None
    """
    app = FastAPI(
        title="Atelier Creation Pipeline",
        description="Credit-charged AI image creation jobs",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings or Settings()  # type: ignore[call-arg]

    app.include_router(workers.router)

    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy"} if database connection succeeds
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        try:
            async with await app.state.uow_factory() as uow:
                result = await uow.session.execute(text("SELECT 1"))
                result.scalar()

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
            logger.error("health_check.failed", error=str(e), error_type=type(e).__name__)
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {"type": type(e).__name__, "message": str(e)},
            }

    return app
