# app/main.py
"""
FastAPI application for the connection progression engine.

Startup order: database pool (postgres storage), Redis (redis events), then
the engine, which re-arms deadline timers for rounds left open.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.config import settings
from app.db.pool import db_pool
from app.features.progression.api.router import router as progression_router
from app.features.progression.domain.errors import ProgressionError
from app.features.progression.repository import PostgresProgressionRepository
from app.features.progression.services.engine import get_engine
from app.infrastructure.observability.logging import get_logger, log_request, setup_logging
from app.middleware import RequestContextMiddleware
from app.routes import health
from app.services.redis_client import fast_redis

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL, json_output=not settings.debug)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    logger.info(
        "Application starting",
        environment=settings.environment,
        debug=settings.debug,
        storage=settings.STORAGE_BACKEND,
        events=settings.EVENT_BACKEND,
    )

    startup_tasks = []

    try:
        if settings.STORAGE_BACKEND == "postgres":
            logger.info("Initializing database pool")
            await db_pool.initialize()
            startup_tasks.append("database_pool")

        if settings.EVENT_BACKEND == "redis":
            logger.info("Initializing Redis connection")
            await fast_redis.initialize()
            startup_tasks.append("redis")

        engine = get_engine()
        if isinstance(engine.repository, PostgresProgressionRepository):
            await engine.repository.ensure_schema()
        await engine.start()
        startup_tasks.append("engine")

        logger.info("All services initialized successfully", services=startup_tasks)

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

        # Clean up any successfully initialized services in reverse order
        if "redis" in startup_tasks:
            try:
                await fast_redis.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up Redis", error=str(cleanup_error))

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

    try:
        await get_engine().shutdown()
    except Exception as e:
        logger.error("Error stopping engine", error=str(e))
        shutdown_errors.append(f"Engine: {e}")

    if "redis" in startup_tasks:
        try:
            logger.info("Closing Redis connection")
            await fast_redis.close()
        except Exception as e:
            logger.error("Error closing Redis", error=str(e))
            shutdown_errors.append(f"Redis: {e}")

    if "database_pool" in startup_tasks:
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
    title="Connection Progression Engine",
    description="Connections, mission voting, paired responses and chat unlock",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(health.router)
app.include_router(progression_router)


@app.exception_handler(ProgressionError)
async def progression_error_handler(request: Request, exc: ProgressionError):
    """Render engine errors as {"error": message, "code": code}."""
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "Request rejected",
        code=exc.code,
        status_code=exc.status_code,
        error=exc.message,
        **exc.context,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    log_request(
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


# Outermost, so the timing log line carries the request id
app.add_middleware(RequestContextMiddleware)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
