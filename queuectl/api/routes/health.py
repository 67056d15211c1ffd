"""
Health check routes.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from queuectl import __version__
from queuectl.db import get_async_session
from queuectl.observability.metrics import get_metrics
from queuectl.timeutil import utcnow
from queuectl.types.api import HealthResponse

router = APIRouter(tags=["Health"])


async def _database_healthy(session: AsyncSession) -> bool:
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        return False
    return True


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health of the API and database connection.",
)
async def health_check(
    session: AsyncSession = Depends(get_async_session),
) -> HealthResponse:
    """
    Perform a health check.

    Checks database connectivity and returns service status.
    """
    healthy = await _database_healthy(session)

    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version=__version__,
        database="healthy" if healthy else "unhealthy",
        timestamp=utcnow(),
    )


@router.get(
    "/ready",
    summary="Readiness check",
)
async def readiness_check(
    session: AsyncSession = Depends(get_async_session),
) -> dict:
    """Readiness probe endpoint."""
    return {"ready": await _database_healthy(session)}


@router.get(
    "/live",
    summary="Liveness check",
)
async def liveness_check() -> dict:
    """Liveness probe endpoint."""
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
)
async def metrics() -> Response:
    """Expose Prometheus metrics."""
    metrics_collector = get_metrics()
    return Response(
        content=metrics_collector.get_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
