"""
FastAPI application with database pool and Redis lifecycle management.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from booking_engine.config import settings
from booking_engine.container import open_container
from booking_engine.infrastructure.observability.logging import get_logger, setup_logging
from booking_engine.middleware import RequestContextMiddleware
from booking_engine.routes import calendar, health

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the DB pool and Redis, build the service container, close both on shutdown."""
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    try:
        async with open_container(settings) as container:
            app.state.container = container
            logger.info("All services initialized successfully")
            yield
            logger.info("Application shutting down")
    except Exception as e:
        logger.error("Application lifecycle error", error=str(e), error_type=type(e).__name__)
        raise

    logger.info("All services closed")


app = FastAPI(
    title="Booking Engine",
    description="Calendar availability, booking and Google Calendar sync",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(health.router)
app.include_router(calendar.router)
app.include_router(calendar.cron_router)


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


# Outermost, so request_id is bound while log_requests runs
app.add_middleware(RequestContextMiddleware)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
