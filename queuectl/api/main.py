"""
FastAPI application entry point.
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from queuectl import __version__
from queuectl.api.routes import dlq_router, health_router, jobs_router
from queuectl.config import get_settings
from queuectl.db import close_db, init_db
from queuectl.exceptions import NotFoundError, QueueError, StoreUnavailable, ValidationError
from queuectl.observability.logging import setup_logging
from queuectl.observability.metrics import get_metrics, setup_metrics
from queuectl.observability.tracing import instrument_fastapi, setup_tracing
from queuectl.types.api import ErrorResponse

logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    StoreUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def create_lifespan(database_url: str | None = None):
    """Build the lifespan handler that owns the database connection."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        setup_logging()
        setup_metrics()
        setup_tracing()
        await init_db(database_url)

        logger.info("Application started")

        yield

        # Shutdown
        await close_db()
        logger.info("Application shutdown")

    return lifespan


async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
    """Map queue errors onto HTTP status codes."""
    status_code = status.HTTP_400_BAD_REQUEST
    for error_type, code in _ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status_code = code
            break

    if status_code >= 500:
        logger.error(f"Request failed: {exc.message}")

    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=type(exc).__name__, detail=exc.message).model_dump(),
    )


async def record_request_metrics(request: Request, call_next):
    """Record request count and latency per route."""
    start = time.perf_counter()
    response = await call_next(request)

    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    get_metrics().record_api_request(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code,
        duration_seconds=time.perf_counter() - start,
    )
    return response


def create_app(database_url: str | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        database_url: Optional database URL overriding settings.

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="queuectl API",
        description="Durable background job queue for shell commands",
        version=__version__,
        lifespan=create_lifespan(database_url),
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(record_request_metrics)
    app.add_exception_handler(QueueError, queue_error_handler)

    # Include routers
    app.include_router(health_router)
    app.include_router(jobs_router)
    app.include_router(dlq_router)

    # Instrument with OpenTelemetry
    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()

    uvicorn.run(
        create_app(),
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
