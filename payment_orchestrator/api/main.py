"""
Main FastAPI application.

Payment orchestration API with:
- Correlation ID tracking
- Error envelopes for domain errors
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse

from payment_orchestrator import __version__
from payment_orchestrator.config import Settings, get_settings
from payment_orchestrator.container import Services, build_services
from payment_orchestrator.core.errors import PaymentProviderError, to_error_envelope
from payment_orchestrator.database.connection import init_db
from payment_orchestrator.monitoring.logging import setup_logging

from .routes import admin_router, monitoring_router, payment_router, webhook_router

logger = structlog.get_logger(__name__)

CORRELATION_HEADERS = ("x-correlation-id", "x-request-id")


def create_app(
    settings: Optional[Settings] = None, services: Optional[Services] = None
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Application settings; loaded from the environment when omitted
        services: Pre-built components (tests); built during startup when omitted

    Returns:
        FastAPI: Configured application
    """
    settings = settings or (services.settings if services else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        owns_services = getattr(app.state, "services", None) is None
        logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)

        if owns_services:
            app.state.services = build_services(settings)
            try:
                await init_db(app.state.services.engine)
                logger.info("database_initialized")
            except Exception as e:
                logger.error("database_initialization_failed", error=str(e))
                raise

        yield

        logger.info("application_shutdown")
        if owns_services:
            await app.state.services.aclose()
            logger.info("database_connections_closed")

    app = FastAPI(
        title="Payment Orchestrator",
        description=(
            "Keeps local payment sessions consistent with external payment providers: "
            "idempotent order creation, webhook dedupe, retries and reconciliation."
        ),
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    if services is not None:
        app.state.services = services

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next: Any) -> Response:
        """Bind a correlation id to the request and structlog context."""
        correlation_id = next(
            (request.headers[name] for name in CORRELATION_HEADERS if request.headers.get(name)),
            str(uuid.uuid4()),
        )
        request.state.correlation_id = correlation_id
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            correlation_id=correlation_id,
            method=request.method,
            path=request.url.path,
        )
        try:
            response = await call_next(request)
            response.headers["x-correlation-id"] = correlation_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=round(time.time() - start_time, 4),
            )
            return response
        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(PaymentProviderError)
    async def payment_error_handler(request: Request, exc: PaymentProviderError) -> JSONResponse:
        """Render domain errors as error envelopes."""
        status_code, envelope = to_error_envelope(
            exc, getattr(request.state, "correlation_id", None)
        )
        logger.warning(
            "payment_request_failed",
            error_code=exc.code,
            status_code=status_code,
            path=request.url.path,
        )
        return JSONResponse(status_code=status_code, content=envelope)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        _, envelope = to_error_envelope(exc, getattr(request.state, "correlation_id", None))
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=envelope)

    app.include_router(payment_router)
    app.include_router(webhook_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    return app


def main() -> None:
    """Run the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    setup_logging(settings)
    uvicorn.run(
        create_app(settings),
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
