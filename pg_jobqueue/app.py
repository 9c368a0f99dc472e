import logging
from contextlib import asynccontextmanager
from typing import Optional

import asyncpg
from fastapi import FastAPI

from .api import register_error_handlers, router
from .config import Settings
from .events import EventBroadcaster
from .manager import JobManager
from .registry import HandlerRegistry
from .scheduler import JobScheduler
from .store import JobRepository, PostgresJobStore

logger = logging.getLogger(__name__)


async def create_pool(settings: Settings) -> asyncpg.Pool:
    return await asyncpg.create_pool(
        host=settings.db_host,
        port=settings.db_port,
        user=settings.db_user,
        password=settings.db_password,
        database=settings.db_name,
        min_size=settings.pool_min_size,
        max_size=settings.pool_max_size,
    )


def create_app(settings: Optional[Settings] = None,
               *,
               store: Optional[JobRepository] = None,
               registry: Optional[HandlerRegistry] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Service settings (read from the environment if None).
        store: Job store to use. When None a PostgreSQL pool is opened on
               startup and closed on shutdown.
        registry: Job handlers; register more on ``app.state.scheduler``
                  before startup if needed.
    """
    settings = settings or Settings.from_env()
    registry = registry if registry is not None else HandlerRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db_pool = None
        job_store = store
        if job_store is None:
            db_pool = await create_pool(settings)
            job_store = PostgresJobStore(db_pool)

        await job_store.initialize_db()

        broadcaster = EventBroadcaster()
        scheduler = JobScheduler(job_store, broadcaster, registry, handler_timeout=settings.job_timeout)

        app.state.store = job_store
        app.state.broadcaster = broadcaster
        app.state.scheduler = scheduler
        app.state.job_manager = JobManager(job_store)

        await scheduler.recover_interrupted_jobs()
        scheduler.start(settings.poll_interval)
        broadcaster.start_heartbeat(settings.heartbeat_interval)
        logger.info(f"Job queue ready: handlers={registry.types()}")

        try:
            yield
        finally:
            broadcaster.stop_heartbeat()
            await scheduler.shutdown()
            if db_pool is not None:
                await db_pool.close()
            logger.info("Job queue stopped")

    app = FastAPI(title="PG Job Queue", lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.include_router(router)
    register_error_handlers(app)
    return app
