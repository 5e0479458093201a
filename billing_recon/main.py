"""Billing reconciliation service: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager

# CRITICAL ORDER: configure_structlog MUST be called before all other package imports
# to avoid the structlog cache pitfall (structlog caches the processor chain on first use).
from billing_recon.core.logging import configure_structlog
from billing_recon.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from billing_recon.api.routes import api_router
from billing_recon.core.config import get_settings
from billing_recon.core.exceptions import BillingReconError
from billing_recon.db import open_database
from billing_recon.metrics.cloudwatch import BusinessMetrics
from billing_recon.middleware.correlation import get_correlation_id, setup_correlation_middleware
from billing_recon.services.entitlement_store import SqlEntitlementStore
from billing_recon.services.event_ledger import SqlEventLedger
from billing_recon.services.stripe_gateway import StripeGateway, build_stripe_client

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the shared clients on startup and release them on shutdown."""
    # SIGTERM flips this so the health check returns 503 while connections drain
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    database = await open_database(settings.database_url)
    app.state.database = database
    logger.info("db_initialized")

    if not settings.stripe_secret_key:
        logger.warning("stripe_secret_key_missing")
    app.state.gateway = StripeGateway(
        build_stripe_client(settings),
        read_attempts=settings.stripe_read_retry_attempts,
    )
    app.state.store = SqlEntitlementStore(database.session_factory)
    app.state.ledger = SqlEventLedger(database.session_factory)
    app.state.metrics = BusinessMetrics.from_settings(settings)
    logger.info("services_initialized", cloudwatch_enabled=settings.cloudwatch_enabled)

    yield

    logger.info("shutdown_begin")
    app.state.metrics.close()
    await database.dispose()
    logger.info("shutdown_complete")


def _error_response(
    request: Request,
    status_code: int,
    detail: str,
    event: str,
    **extra,
) -> JSONResponse:
    """Log with a fresh debug_id and return the sanitized body."""
    debug_id = str(uuid.uuid4())
    log = logger.error if status_code >= 500 else logger.warning
    log(
        event,
        status_code=status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        user_id=getattr(request.state, "user_id", None),
        detail=detail,
        **extra,
    )
    return JSONResponse(status_code=status_code, content={"detail": detail, "debug_id": debug_id})


async def billing_exception_handler(request: Request, exc: BillingReconError) -> JSONResponse:
    """Domain errors carry their own HTTP status."""
    return _error_response(
        request,
        exc.http_status,
        str(exc) or type(exc).__name__,
        "billing_error",
        error_type=type(exc).__name__,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """HTTPException with debug_id tracking."""
    return _error_response(request, exc.status_code, exc.detail, "http_exception")


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unhandled errors: full traceback server-side, generic 500 to the client."""
    debug_id = str(uuid.uuid4())
    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        user_id=getattr(request.state, "user_id", None),
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Subscription billing reconciliation for the membership and creator marketplace",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(dict.fromkeys([settings.frontend_url, *settings.cors_allowed_origins])),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Correlation ID middleware (runs first on incoming requests)
    setup_correlation_middleware(app)

    app.exception_handler(BillingReconError)(billing_exception_handler)
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "billing_recon.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
