"""
Main FastAPI application.

Billing events API with:
- Inbound webhook verification and idempotent processing
- Subscriber endpoint management and delivery inspection
- Subscription and payout operations
- Request ID tracking and structured logging
- Prometheus metrics and health probes
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional, Type

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from billing_events import __version__
from billing_events.config import Settings, get_settings
from billing_events.core.errors import (
    AmountTooLowForPayout,
    BillingError,
    InsufficientBalance,
    InvalidSignature,
    InvalidStateTransition,
    LockContention,
    PayoutAccountNotReady,
    ProcessorPermanentFailure,
    ProcessorTransientFailure,
    ResourceNotFound,
)
from billing_events.monitoring.logging import setup_logging
from billing_events.services import Services, build_services

from .routes import (
    admin_router,
    event_router,
    monitoring_router,
    payout_router,
    subscription_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)

ERROR_STATUS: Dict[Type[BillingError], int] = {
    ResourceNotFound: status.HTTP_404_NOT_FOUND,
    InvalidStateTransition: status.HTTP_409_CONFLICT,
    LockContention: status.HTTP_409_CONFLICT,
    InsufficientBalance: status.HTTP_422_UNPROCESSABLE_ENTITY,
    AmountTooLowForPayout: status.HTTP_422_UNPROCESSABLE_ENTITY,
    PayoutAccountNotReady: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ProcessorTransientFailure: status.HTTP_502_BAD_GATEWAY,
    ProcessorPermanentFailure: status.HTTP_502_BAD_GATEWAY,
    InvalidSignature: status.HTTP_400_BAD_REQUEST,
}


def status_for(exc: BillingError) -> int:
    for error_class in type(exc).__mro__:
        if error_class in ERROR_STATUS:
            return ERROR_STATUS[error_class]
    return status.HTTP_400_BAD_REQUEST


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Builds the services unless they were supplied to ``create_app``, and
    closes whatever it built on shutdown.
    """
    settings: Settings = app.state.settings
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_mode=settings.is_test_mode,
    )

    owned = app.state.services is None
    if owned:
        app.state.services = build_services(settings)

    services: Services = app.state.services
    try:
        await services.database.create_all()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    yield

    logger.info("application_shutdown")
    if owned:
        await services.close()


def create_app(
    settings: Optional[Settings] = None, services: Optional[Services] = None
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings (defaults to the cached instance)
        services: Pre-built services; when omitted the lifespan builds them
    """
    settings = settings or (services.settings if services else get_settings())
    setup_logging(settings)

    app = FastAPI(
        title="Billing Events Service",
        description=(
            "Idempotent webhook processing, subscription billing, payout settlement "
            "and outbound event delivery."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.settings = settings
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """Bind a request ID to the log context and echo it in the response."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response

        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise

        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
        status_code = status_for(exc)
        log = logger.error if status_code >= 500 else logger.warning
        log("api_billing_error", path=request.url.path, **exc.to_log())
        return JSONResponse(
            status_code=status_code,
            content={"detail": exc.message, "code": exc.code},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "message": "An unexpected error occurred. Please try again later.",
            },
        )

    app.include_router(webhook_router)
    app.include_router(event_router)
    app.include_router(subscription_router)
    app.include_router(payout_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "billing_events.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
