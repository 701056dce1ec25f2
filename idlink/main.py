# idlink/main.py
"""
FastAPI application: member-facing verification routes, the internal API
used by the chat bot, and health checks.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from idlink.config import settings
from idlink.infrastructure.observability.logging import get_logger, log_request, setup_logging
from idlink.routes import health, internal, verify
from idlink.services.redis_client import fast_redis

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the Redis pool on startup and close it on shutdown."""
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    try:
        logger.info("Initializing Redis connection")
        await fast_redis.initialize()
    except Exception as e:
        logger.error("Failed to initialize services", error=str(e))
        raise

    logger.info("All services initialized successfully", services=["redis"])

    yield

    logger.info("Application shutting down")
    try:
        await fast_redis.close()
    except Exception as e:
        logger.error("Error closing Redis", error=str(e))
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="idlink",
    description="Links Discord members to Keycloak identities and assigns roles from their attributes",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(verify.router)
app.include_router(internal.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    log_request(request.method, request.url.path, response.status_code, round(process_time, 2))
    return response


def run() -> None:
    """Console entrypoint."""
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)


if __name__ == "__main__":
    run()
