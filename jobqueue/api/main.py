"""
FastAPI status application.

Read-only inspection plus the dead-letter requeue action. The application
does not own the QueueContext: the worker process that serves it does.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

import jobqueue
from jobqueue.api.routes import health_router, jobs_router
from jobqueue.context import QueueContext
from jobqueue.errors import StoreUnavailableError

logger = logging.getLogger(__name__)


class EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the host process."""

    def install_signal_handlers(self) -> None:
        pass

    @contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


def create_app(ctx: QueueContext) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        ctx: Context whose Store, metrics and settings the routes use.

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="Job Queue Status API",
        description="Inspection and operator endpoints for the durable job queue",
        version=jobqueue.__version__,
        docs_url="/docs",
        redoc_url=None,
    )
    app.state.ctx = ctx

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(request, exc: StoreUnavailableError) -> JSONResponse:
        logger.warning("Store unavailable", extra={"path": request.url.path})
        return JSONResponse(status_code=503, content={"detail": exc.message})

    app.include_router(health_router)
    app.include_router(jobs_router)

    return app


def create_server(ctx: QueueContext) -> uvicorn.Server:
    """
    Build a uvicorn server for the status API on health_host:health_port.

    The caller runs it with ``await server.serve()`` inside its own event
    loop and stops it by setting ``server.should_exit``.
    """
    settings = ctx.settings
    if settings.health_port is None:
        raise ValueError("health_port is not configured")

    config = uvicorn.Config(
        create_app(ctx),
        host=settings.health_host,
        port=settings.health_port,
        log_level=settings.log_level.lower(),
        log_config=None,
        lifespan="off",
    )
    return EmbeddedServer(config)
