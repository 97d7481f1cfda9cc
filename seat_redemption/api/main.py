"""
Main FastAPI application.

Seat redemption and payment-reconciliation API with:
- CORS configuration
- Engine error mapping
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from seat_redemption import __version__
from seat_redemption.config import get_settings
from seat_redemption.core.exceptions import EngineError
from seat_redemption.monitoring.logging import setup_logging
from seat_redemption.services import EngineServices, build_services

from .routes import (
    admin_router,
    monitoring_router,
    order_router,
    redemption_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)


def create_app(services: Optional[EngineServices] = None) -> FastAPI:
    """
    Build the application.

    Args:
        services: Pre-built engine services (tests inject their own); built
            from the environment settings when omitted

    Returns:
        FastAPI: Configured application
    """
    services = services or build_services()
    settings = services.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
        )

        try:
            await services.start()
            logger.info("database_initialized")
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            raise

        yield

        logger.info("application_shutdown")
        try:
            await services.close()
            logger.info("engine_resources_closed")
        except Exception as e:
            logger.error("engine_shutdown_error", error=str(e))

    app = FastAPI(
        title="Seat Redemption Engine",
        description=(
            "Redemption-code allocation over a capacity-limited seat pool, with "
            "payment-gateway order tracking, signed notify handling, active query "
            "reconciliation and refunds."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
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
        """
        Add request ID to all requests for tracing.

        Also adds timing information and structured logging context.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        logger.info(
            "request_started",
            client_host=request.client.host if request.client else None,
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

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
        logger.info(
            "engine_error",
            kind=exc.kind,
            status_code=exc.status_code,
            error=exc.message,
            path=request.url.path,
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

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
                "kind": "internal",
                "http_status": status.HTTP_500_INTERNAL_SERVER_ERROR,
                "message": "An unexpected error occurred. Please try again later.",
            },
        )

    app.include_router(redemption_router)
    app.include_router(order_router)
    app.include_router(webhook_router)
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


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    setup_logging(settings, component="api")
    uvicorn.run(
        "seat_redemption.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
