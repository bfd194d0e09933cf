"""Main FastAPI application for the plant-care notification engine."""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from care_notifier import __version__
from care_notifier.config import EngineSettings
from care_notifier.db.config import create_db_engine
from care_notifier.db.init import init_db
from care_notifier.providers.base_provider import LoggingPushTransport
from care_notifier.routers import notifications
from care_notifier.services.scheduler import TaskNotificationScheduler
from care_notifier.stores.memory import InMemoryPreferenceStore, InMemoryTaskSource
from care_notifier.stores.sql_store import SQLScheduleStore
from care_notifier.utils.logger import configure_logging, get_logger

logger = get_logger("notification-api")


def build_scheduler(settings: EngineSettings) -> TaskNotificationScheduler:
    """Wire the engine with the SQL store and the development transport."""
    engine = create_db_engine(settings.database_url)
    return TaskNotificationScheduler(
        store=SQLScheduleStore(engine),
        transport=LoggingPushTransport(),
        preferences=InMemoryPreferenceStore(),
        task_source=InMemoryTaskSource(),
        settings=settings,
    )


def create_app(
    scheduler: Optional[TaskNotificationScheduler] = None,
    settings: Optional[EngineSettings] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        scheduler: Engine to expose; built from the environment when omitted
        settings: Settings used when the engine is built here
    """
    if scheduler is None:
        settings = settings or EngineSettings.from_env()
        configure_logging(settings.log_level)
        scheduler = build_scheduler(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if isinstance(scheduler.store, SQLScheduleStore):
            try:
                init_db(scheduler.store.engine)
            except Exception as e:
                logger.error("Database initialization failed", error=str(e))
                raise
        await scheduler.start()
        logger.info("Application startup complete")
        yield
        await scheduler.stop()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Plant Care Notification Engine",
        description="Schedules, batches and escalates plant-care task notifications",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.scheduler = scheduler

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "version": __version__}

    app.include_router(notifications.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "care_notifier.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
