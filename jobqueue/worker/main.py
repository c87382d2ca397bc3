"""
Worker process for executing jobs.

Wires a QueueContext, the handler registry and the dispatcher pool into one
process, optionally with the embedded reaper and the status server, and
shuts them down together on SIGTERM/SIGINT.
"""

import asyncio
import importlib
import logging
import signal

from jobqueue.config import Settings, get_settings
from jobqueue.context import QueueContext, create_context
from jobqueue.db.models import Job
from jobqueue.observability.logging import setup_logging
from jobqueue.queue.client import QueueClient
from jobqueue.reaper.main import Reaper
from jobqueue.worker.dispatcher import Dispatcher
from jobqueue.worker.registry import HandlerRegistry

logger = logging.getLogger(__name__)


def load_handler_modules(registry: HandlerRegistry, module_paths: list[str]) -> None:
    """
    Import each module and let it register its handlers.

    Every module must expose ``register(registry)``.

    Raises:
        ImportError: A module cannot be imported.
        TypeError: A module has no callable ``register``.
    """
    for path in module_paths:
        module = importlib.import_module(path)
        register = getattr(module, "register", None)
        if not callable(register):
            raise TypeError(f"Handler module {path} does not define register(registry)")
        register(registry)
        logger.info("Loaded handler module", extra={"module": path})


class Worker:
    """
    Job worker process.

    Features:
    - Dispatcher pool with atomic claims and lease heartbeats
    - Embedded lease reaper (worker_run_reaper)
    - Status API on health_port, when configured
    - Graceful shutdown on SIGTERM/SIGINT
    """

    def __init__(
        self,
        ctx: QueueContext,
        registry: HandlerRegistry,
        *,
        run_reaper: bool | None = None,
        serve_status: bool | None = None,
    ):
        """
        Args:
            ctx: Process context; the caller closes it.
            registry: Handlers this worker can execute.
            run_reaper: Run the reaper in this process. Defaults to settings.
            serve_status: Serve the status API. Defaults to health_port being set.
        """
        settings = ctx.settings
        self._ctx = ctx
        self.registry = registry
        self.dispatcher = Dispatcher(ctx, registry)
        self.client = QueueClient(ctx, registry)
        self.client.add_listener(self._on_local_enqueue)

        if run_reaper is None:
            run_reaper = settings.worker_run_reaper
        self.reaper = Reaper(ctx) if run_reaper else None

        if serve_status is None:
            serve_status = settings.health_port is not None
        self._serve_status = serve_status
        self._server = None

    @property
    def worker_id(self) -> str:
        return self.dispatcher.worker_id

    def _on_local_enqueue(self, job: Job) -> None:
        self.dispatcher.wake()

    def stop(self) -> None:
        """Stop the worker gracefully. Safe to call from a signal handler."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self.dispatcher.stop()
        if self.reaper is not None:
            self.reaper.stop()

    async def run(self) -> None:
        """Run until stop() is called and in-flight jobs have drained."""
        logger.info(
            "Worker starting",
            extra={
                "worker_id": self.worker_id,
                "kinds": self.registry.kinds(),
                "concurrency": self.dispatcher.concurrency,
            },
        )

        background: list[asyncio.Task] = []
        if self.reaper is not None:
            background.append(asyncio.create_task(self.reaper.start(), name="reaper"))
        if self._serve_status:
            # Imported here so that workers without a status port skip FastAPI
            from jobqueue.api.main import create_server

            self._server = create_server(self._ctx)
            background.append(asyncio.create_task(self._server.serve(), name="status-server"))

        try:
            await self.dispatcher.run()
        finally:
            if self.reaper is not None:
                self.reaper.stop()
            if self._server is not None:
                self._server.should_exit = True
            results = await asyncio.gather(*background, return_exceptions=True)
            for task, result in zip(background, results):
                if isinstance(result, Exception):
                    logger.error(
                        f"Background task {task.get_name()} failed: {result}",
                        extra={"worker_id": self.worker_id},
                    )
            logger.info("Worker stopped", extra={"worker_id": self.worker_id})


def build_registry(settings: Settings) -> HandlerRegistry:
    """
    Load the configured handler modules.

    Raises:
        ValueError: No handler kinds were registered. A worker without
            handlers would dead-letter every job it claims.
    """
    registry = HandlerRegistry()
    load_handler_modules(registry, settings.worker_handler_modules)
    if not len(registry):
        raise ValueError(
            "No job handlers registered; set WORKER_HANDLER_MODULES to at least one module"
        )
    return registry


async def run_async(settings: Settings | None = None) -> None:
    """Run the worker asynchronously."""
    settings = settings or get_settings()
    setup_logging(settings)
    registry = build_registry(settings)

    async with create_context(settings) as ctx:
        if settings.is_sqlite:
            await ctx.database.create_all()

        worker = Worker(ctx, registry)


        # Handle shutdown signals
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, worker.stop)

        await worker.run()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
