"""LinkVault API: short-link rotation, click tracking, attribution and analytics."""
from __future__ import annotations

import logging

from src.logging_config import setup_logging
setup_logging()
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.engine import engine, get_session
from src.db.tables import Base
from src.services.scheduler import start_scheduler, stop_scheduler
from src.services.tracking_queue import tracking_queue
from config.settings import settings

# ── Sentry Error Tracking ────────────────────────
if settings.SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.WARNING, event_level=logging.ERROR),
        ],
        # Visitor IPs and session cookies stay out of Sentry
        send_default_pii=False,
        before_send=lambda event, hint: (
            {**event, "request": {**event.get("request", {}), "cookies": None}}
            if "request" in event else event
        ),
    )

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup, start the tracking workers and health-check scheduler."""
    # Validate configuration before anything else
    from src.startup_checks import validate_settings
    validate_settings()

    # Import all tables so they're registered with Base.metadata
    import src.db.affiliate_tables  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready")

    tracking_queue.start()

    if settings.HEALTH_CHECK_INTERVAL_HOURS > 0:
        start_scheduler(interval_hours=settings.HEALTH_CHECK_INTERVAL_HOURS)

    yield

    logger.info("Shutting down, flushing tracking queue...")
    await tracking_queue.stop()
    stop_scheduler()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="LinkVault API",
    version=VERSION,
    description="Affiliate link rotation, click tracking, conversion attribution and funnel analytics",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request ID tracing
from src.middleware.request_id import RequestIDMiddleware
app.add_middleware(RequestIDMiddleware)


# ---- Routers ----
from src.api.redirect import router as redirect_router
app.include_router(redirect_router)

from src.api.links import router as links_router
app.include_router(links_router)

from src.api.conversions import router as conversions_router
app.include_router(conversions_router)

from src.api.analytics import router as analytics_router
app.include_router(analytics_router)


@app.get("/health")
async def health(session: AsyncSession = Depends(get_session)):
    """Deep health check: validates DB connectivity and reports the tracking backlog."""
    try:
        from sqlalchemy import text
        await session.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception:
        logger.warning("Health check could not reach the database", exc_info=True)
        db_status = "error"
    status = "ok" if db_status == "connected" else "degraded"
    return {
        "status": status,
        "db": db_status,
        "tracking": {
            "running": tracking_queue.running,
            "processed": tracking_queue.processed,
            "deadLetters": len(tracking_queue.dead_letters),
        },
        "version": VERSION,
    }


# --- Structured Error Responses ---

from fastapi import Request as FastAPIRequest
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.errors import DuplicateConversion, LinkVaultError, PersistenceFailure, ValidationError


@app.exception_handler(LinkVaultError)
async def domain_error_handler(request: FastAPIRequest, exc: LinkVaultError):
    """Map the domain error taxonomy onto the standard error envelope."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.error_code, request.method, request.url.path, exc.message)
    content = {"error": exc.error_code, "message": exc.message}
    if isinstance(exc, PersistenceFailure):
        content["message"] = "Something went wrong. Please try again."
    if isinstance(exc, ValidationError):
        content["details"] = exc.details
    if isinstance(exc, DuplicateConversion):
        content["conversionId"] = exc.conversion_id
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: FastAPIRequest, exc: RequestValidationError):
    """Return clean, structured validation errors instead of raw Pydantic output."""
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        field = ".".join(loc) if loc else "unknown"
        errors.append({"field": field, "message": err["msg"]})
    return JSONResponse(status_code=400, content={
        "error": "validation_error",
        "message": "Invalid request data",
        "details": errors,
    })


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: FastAPIRequest, exc: StarletteHTTPException):
    """Consistent error envelope for all HTTP errors."""
    return JSONResponse(status_code=exc.status_code, content={
        "error": exc.detail if isinstance(exc.detail, str) else "error",
        "message": exc.detail,
    })


@app.exception_handler(Exception)
async def unhandled_error_handler(request: FastAPIRequest, exc: Exception):
    """Catch-all for unhandled exceptions; never leak stack traces."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={
        "error": "internal_error",
        "message": "Something went wrong. Please try again.",
    })
