"""
FastAPI application with database pool and drip worker lifecycle management.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from drip_engine.config import settings
from drip_engine.db.ddl import apply_schema
from drip_engine.db.pool import db_pool
from drip_engine.features.lifecycle_campaigns.api.router import router as drip_admin_router
from drip_engine.features.lifecycle_campaigns.jobs.campaign_worker import get_campaign_worker
from drip_engine.infrastructure.observability.logging import get_logger, setup_logging
from drip_engine.routes import health

# Setup logging before creating the app
setup_logging(log_level=settings.log_level)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    startup_tasks = []

    try:
        logger.info("Initializing database pool")
        await db_pool.initialize()
        startup_tasks.append("database_pool")

        if settings.APPLY_SCHEMA_ON_STARTUP:
            logger.info("Applying campaign schema")
            await apply_schema()
            startup_tasks.append("schema")

        if settings.RUN_WORKER_IN_APP:
            logger.info("Starting drip campaign worker")
            await get_campaign_worker().start()
            startup_tasks.append("drip_worker")

        logger.info("All services initialized successfully", services=startup_tasks)

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

        if "drip_worker" in startup_tasks:
            try:
                await get_campaign_worker().stop()
            except Exception as cleanup_error:
                logger.error("Error stopping drip worker", error=str(cleanup_error))

        if "database_pool" in startup_tasks:
            try:
                await db_pool.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up database pool", error=str(cleanup_error))

        raise

    yield

    # Shutdown sequence (reverse order)
    logger.info("Application shutting down")

    shutdown_errors = []

    if "drip_worker" in startup_tasks:
        try:
            logger.info("Stopping drip campaign worker")
            await get_campaign_worker().stop()
        except Exception as e:
            logger.error("Error stopping drip worker", error=str(e))
            shutdown_errors.append(f"Worker: {e}")

    # Close database pool last (the worker may still hold connections)
    try:
        logger.info("Closing database pool")
        await db_pool.close()
    except Exception as e:
        logger.error("Error closing database pool", error=str(e))
        shutdown_errors.append(f"Database: {e}")

    if shutdown_errors:
        logger.warning("Some services had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="Drip Engine",
    description="Lifecycle drip campaign scheduling and notification delivery",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(drip_admin_router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
