"""
Health check routes.
"""

from fastapi import APIRouter
from fastapi.responses import Response

import jobqueue
from jobqueue.api.dependencies import Context
from jobqueue.db.models import utcnow
from jobqueue.types.api import HealthResponse

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health of the worker and database connection.",
)
async def health_check(ctx: Context) -> HealthResponse:
    """
    Perform a health check.

    Checks database connectivity and returns service status. A degraded
    status means the Store is unreachable; the worker keeps running and
    backs off until it returns.
    """
    db_healthy = await ctx.database.ping()

    return HealthResponse(
        status="healthy" if db_healthy else "degraded",
        version=jobqueue.__version__,
        service=ctx.settings.otel_service_name,
        worker_id=ctx.settings.worker_id,
        database="healthy" if db_healthy else "unhealthy",
        timestamp=utcnow(),
    )


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics(ctx: Context) -> Response:
    """
    Expose Prometheus metrics.

    Returns:
        Prometheus-formatted metrics.
    """
    return Response(
        content=ctx.metrics.get_metrics(),
        media_type=ctx.metrics.get_content_type(),
    )
