"""
FastAPI API Service Entry Point
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from api.routes import reconciliation, square_webhook
from shared.logging_config import configure_logging
from shared.startup_validator import StartupValidationError, validate_startup_config
from sync.services.components import get_event_processor

# Configure structured JSON logging on startup
configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Square Sync API",
    version="1.0.0",
)

# Include webhook routers
app.include_router(square_webhook.router, prefix="/webhooks", tags=["webhooks"])

# Include reconciliation operational router
app.include_router(reconciliation.router)


# =========================================================================
# STARTUP / SHUTDOWN
# =========================================================================
@app.on_event("startup")
async def startup_config_validation():
    """
    Validate critical configuration at startup and start event workers.

    Square credentials are not required here: webhooks are still accepted
    and the sync engine reports "not configured" at job entry.

    Raises:
        StartupValidationError: If critical configuration is invalid
    """
    logger.info("Running API startup configuration validation...")
    try:
        await validate_startup_config(require_square=False)
        logger.info("API startup configuration validation passed")
    except StartupValidationError as e:
        logger.critical(f"API startup blocked due to configuration errors: {e}")
        raise

    get_event_processor().start()


@app.on_event("shutdown")
async def shutdown_event_processor():
    """Drain queued Square events before exiting."""
    await get_event_processor().stop(drain=True)


# Exception handler for validation errors
@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Return 400 with validation error details."""
    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "details": exc.errors(include_url=False, include_context=False)},
    )


@app.get("/health")
async def health_check() -> JSONResponse:
    """
    Health check endpoint for Docker health checks and monitoring.

    Checks:
    - PostgreSQL connectivity (SELECT 1 query)
    - Redis connectivity (only when a Redis backend is configured)

    Returns:
        200 OK if all systems healthy
        503 Service Unavailable if degraded
    """
    from sqlalchemy import text

    from database.connection import get_async_session
    from shared.config import get_settings

    settings = get_settings()
    health_status = {
        "status": "healthy",
        "postgres": "unknown",
        "redis": "not_used",
        "event_queue": get_event_processor().pending,
    }
    status_code = 200

    try:
        async with get_async_session() as session:
            await session.execute(text("SELECT 1"))
            health_status["postgres"] = "connected"
    except Exception:
        health_status["postgres"] = "disconnected"
        health_status["status"] = "degraded"
        status_code = 503

    if "redis" in (settings.RATE_LIMIT_BACKEND, settings.CACHE_BACKEND):
        from shared.redis_client import get_redis_client

        try:
            await get_redis_client().ping()
            health_status["redis"] = "connected"
        except Exception:
            health_status["redis"] = "disconnected"
            health_status["status"] = "degraded"
            status_code = 503

    return JSONResponse(status_code=status_code, content=health_status)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint"""
    return {"message": "Square Sync API - Use /health for health checks"}
