"""
FastAPI Application Entry Point.

This is the main application file for the Trip Merge Engine.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError

from tripmerge.app.core.config import settings
from tripmerge.app.api.v1.router import router as api_v1_router
from tripmerge.app.db.session import engine, Base, AsyncSessionLocal
from tripmerge.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)
from tripmerge.app.core.observability import ObservabilityMiddleware, configure_logging, logger
from tripmerge.app.domain.merging.scheduler import AutoMergeScheduler
from tripmerge.app.services.cache import TTLCache
from tripmerge.app.services.config_service import initialize_config, load_merge_config
from tripmerge.app.services.route_optimizer import RouteOptimizerClient

# Import models to ensure they are registered with Base
from tripmerge.app.models.vehicle import Vehicle
from tripmerge.app.models.booking import Booking
from tripmerge.app.models.system_config import SystemConfig


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates database tables and seeds missing configuration rows.
    2. Creates the route optimizer client and the configuration cache.
    3. Starts the automated merge scheduler (if enabled).
    4. Stops the scheduler and closes the optimizer client on shutdown.
    """
    configure_logging()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as db:
        await initialize_config(db)
        merge_config = await load_merge_config(db)

    app.state.config_cache = TTLCache(ttl_seconds=settings.config_cache_ttl_seconds)
    app.state.optimizer = RouteOptimizerClient()
    app.state.scheduler = AutoMergeScheduler(
        AsyncSessionLocal,
        app.state.optimizer,
        interval_seconds=merge_config.auto_check_interval_seconds,
        cache=app.state.config_cache
    )
    if settings.scheduler_enabled:
        app.state.scheduler.start()

    yield

    await app.state.scheduler.stop()
    await app.state.optimizer.aclose()
    logger.info("Shutdown complete")


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Trip merging and pickup/dropoff route sequencing",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status and application information
    """
    scheduler = getattr(app.state, "scheduler", None)
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "scheduler_running": bool(scheduler and scheduler.running),
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")
