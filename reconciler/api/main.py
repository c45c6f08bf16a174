"""
Main FastAPI application.

Webhook receiver for the order and payment streams with:
- Request ID tracking
- Structured logging
- Error taxonomy mapped to HTTP status codes
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse

from reconciler import __version__
from reconciler.config import get_settings
from reconciler.core.dependencies import Dependencies, build_dependencies
from reconciler.database import init_db
from reconciler.errors import ReconcilerError
from reconciler.monitoring.logging import setup_logging

from .routes import monitoring_router, webhook_router

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Builds the dependency bundle from the environment unless one was passed
    to ``create_app``.
    """
    owned = getattr(app.state, "dependencies", None) is None

    if owned:
        settings = get_settings()
        setup_logging(settings)
        deps = build_dependencies(settings)
        app.state.dependencies = deps

        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
        )

        try:
            await init_db(deps.db_engine, deps.order_store.table)
            logger.info("database_initialized")
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            raise

    yield

    logger.info("application_shutdown")
    if owned:
        await app.state.dependencies.close()
        app.state.dependencies = None


def create_app(dependencies: Optional[Dependencies] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        dependencies: Prebuilt bundle (tests, embedding); built at startup if omitted

    Returns:
        FastAPI: Configured application
    """
    app = FastAPI(
        title="Invoice Reconciler",
        description=(
            "Joins paid orders with confirmed payments and issues one invoice per order. "
            "Features: out-of-order arrival via delayed retries, conditional order writes, "
            "manual review escalation, and monitoring."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.dependencies = dependencies

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

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response

        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(ReconcilerError)
    async def reconciler_exception_handler(request: Request, exc: ReconcilerError) -> JSONResponse:
        """Map the error taxonomy to status codes."""
        log = logger.warning if exc.http_status < 500 else logger.error
        log(
            "request_rejected",
            error_code=exc.error_code,
            error=exc.message,
            status_code=exc.http_status,
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled exceptions.
        """
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
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": "invoice-reconciler",
            "version": __version__,
            "status": "operational",
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


app = create_app()


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "reconciler.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
