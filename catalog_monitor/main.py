"""Main application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Response
from prometheus_fastapi_instrumentator import Instrumentator

from catalog_monitor import metrics
from catalog_monitor.api.routes import actions, releases, scans
from catalog_monitor.config import Settings, load_settings
from catalog_monitor.db.models import Base
from catalog_monitor.logging_config import setup_logging
from catalog_monitor.worker.runner import TaskRunner
from catalog_monitor.worker.scheduler import setup_scheduler

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    runner: Optional[TaskRunner] = None,
    start_scheduler: bool = True,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings for this process; loaded from the environment if omitted
        runner: Prebuilt task runner (tests pass one bound to their database)
        start_scheduler: Whether the lifespan starts the APScheduler jobs
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info("Starting Catalog Monitor...")
        app.state.runner = runner or TaskRunner.from_settings(settings)

        # Initialize database
        if app.state.runner.engine is not None:
            async with app.state.runner.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        scheduler = None
        if start_scheduler:
            scheduler = setup_scheduler(settings, app.state.runner)
            scheduler.start()
            logger.info("Scheduler started")

        yield

        logger.info("Shutting down...")
        if scheduler:
            scheduler.shutdown()
        await app.state.runner.close()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="Catalog Monitor",
        description="Detect new releases on creator DSP catalogs and drive confirm/dispute alerts",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Add Prometheus instrumentation
    instrumentator = Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        should_respect_env_var=True,
        excluded_handlers=["/metrics", "/health", "/favicon.ico"],
    )
    instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

    app.include_router(releases.router)
    app.include_router(actions.router)
    app.include_router(scans.router)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/favicon.ico")
    async def favicon():
        """Return empty favicon response to avoid 404 noise."""
        return Response(status_code=204)

    metrics.app_info.info({"version": "0.1.0"})
    return app


def main() -> None:
    settings = load_settings()
    setup_logging(settings)
    uvicorn.run(
        create_app(settings),
        host=settings.app_host,
        port=settings.app_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
