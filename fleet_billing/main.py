"""Fleet Billing Engine: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager

# configure_structlog must run before other app imports: structlog caches
# the processor chain on first use.
from fleet_billing.core.logging import configure_structlog
from fleet_billing.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from fleet_billing.api.routes import api_router
from fleet_billing.core.config import get_settings
from fleet_billing.core.exceptions import PlatformLookupError, VehicleCapacityExceededError
from fleet_billing.db import close_db, init_db
from fleet_billing.db.migrations import run_migrations
from fleet_billing.middleware.correlation import get_correlation_id, setup_correlation_middleware

logger = structlog.get_logger(__name__)


def validate_stripe_settings() -> None:
    """Fail fast when Stripe credentials are missing outside debug mode."""
    settings = get_settings()
    if settings.debug:
        return
    required = {
        "stripe_secret_key": settings.stripe_secret_key,
        "stripe_webhook_secret": settings.stripe_webhook_secret,
    }
    missing = [k for k, v in required.items() if not v]
    if missing:
        raise RuntimeError(f"Missing Stripe settings at startup: {missing}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: database, migrations, settings checks. Shutdown: release the pool."""
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    engine = await init_db()
    logger.info("db_initialized")

    # Migrations complete before the first request is accepted
    if settings.run_migrations_on_startup:
        await run_migrations(engine)

    validate_stripe_settings()
    logger.info("stripe_settings_validated")

    yield

    logger.info("shutdown_begin")
    await close_db()
    logger.info("shutdown_complete")


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Log HTTP errors with a debug_id and return a sanitized body."""
    debug_id = str(uuid.uuid4())

    logger.error(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        detail=exc.detail,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id},
    )


async def platform_lookup_exception_handler(request: Request, exc: PlatformLookupError) -> JSONResponse:
    """Payment platform unavailable on a fail-closed path: ask the sender to retry."""
    debug_id = str(uuid.uuid4())

    logger.error(
        "platform_lookup_failed",
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        operation=exc.operation,
        error=exc.detail,
    )

    return JSONResponse(
        status_code=503,
        content={"detail": "Payment platform unavailable, retry later", "debug_id": debug_id},
    )


async def capacity_exceeded_exception_handler(request: Request, exc: VehicleCapacityExceededError) -> JSONResponse:
    """Over the hard vehicle limit: a licensing refusal, not a validation error."""
    logger.info(
        "vehicle_capacity_exceeded",
        path=request.url.path,
        active_vehicle_count=exc.usage.active_vehicle_count,
        hard_limit=exc.usage.hard_limit,
    )
    return JSONResponse(
        status_code=403,
        content={
            "error": "capacity_exceeded",
            "detail": "Vehicle capacity exceeded. Request an upgrade to add more vehicles.",
            "usage": exc.usage.to_dict(),
        },
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unhandled errors with traceback, return a generic 500."""
    debug_id = str(uuid.uuid4())

    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(PlatformLookupError)(platform_lookup_exception_handler)
    app.exception_handler(VehicleCapacityExceededError)(capacity_exceeded_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Stripe billing reconciliation and vehicle license engine",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_correlation_middleware(app)
    register_exception_handlers(app)
    app.include_router(api_router, prefix="/api")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "fleet_billing.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
