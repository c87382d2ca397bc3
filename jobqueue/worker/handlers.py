"""
Built-in diagnostic job handlers.

Useful for smoke-testing a deployment: they exercise success, long-running
work with heartbeats, and both failure classes. Real job kinds are
registered by the application through ``worker_handler_modules``.
"""

import asyncio
import logging
import random
from typing import Any

from pydantic import BaseModel, Field

from jobqueue.errors import PermanentHandlerError, TransientHandlerError
from jobqueue.types.job import JobContext, JobResult
from jobqueue.worker.registry import HandlerRegistry

logger = logging.getLogger(__name__)


class SleepPayload(BaseModel):
    duration_seconds: float = Field(default=1.0, ge=0)
    heartbeat_interval: float | None = Field(default=None, gt=0)


class FailPayload(BaseModel):
    message: str = "Intentional failure"
    failure_rate: float = Field(default=1.0, ge=0, le=1)


async def handle_echo(payload: Any, context: JobContext) -> JobResult:
    """
    Echo handler for testing.

    Simply returns the input payload as output.
    """
    logger.info(
        "Echo job executing",
        extra={"job_id": str(context.job_id), "attempt": context.attempt},
    )
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    return JobResult.ok({"echo": payload})


async def handle_sleep(payload: SleepPayload, context: JobContext) -> JobResult:
    """
    Sleep handler for testing delays and lease extension.

    Heartbeats every ``heartbeat_interval`` seconds when set, and gives up as
    soon as the lease is lost.
    """
    interval = payload.heartbeat_interval or payload.duration_seconds
    elapsed = 0.0
    while elapsed < payload.duration_seconds:
        step = min(interval, payload.duration_seconds - elapsed)
        await asyncio.sleep(step)
        elapsed += step
        if payload.heartbeat_interval and elapsed < payload.duration_seconds:
            if not await context.heartbeat():
                raise TransientHandlerError("lease lost while sleeping")

    return JobResult.ok({"slept_for": payload.duration_seconds})


async def handle_fail(payload: FailPayload, context: JobContext) -> JobResult:
    """
    Handler that fails transiently - for testing retry logic.

    Fails with probability ``failure_rate`` (always, by default).
    """
    if random.random() < payload.failure_rate:
        logger.info(
            "Failing job executing (will fail)",
            extra={"job_id": str(context.job_id), "attempt": context.attempt},
        )
        raise TransientHandlerError(f"{payload.message} on attempt {context.attempt}")
    return JobResult.ok({"message": "Succeeded this time!"})


async def handle_fail_permanent(payload: FailPayload, context: JobContext) -> JobResult:
    """Handler that fails permanently - for testing dead-lettering."""
    raise PermanentHandlerError(payload.message)


def register_builtin_handlers(registry: HandlerRegistry) -> None:
    """Install the diagnostic kinds on a registry."""
    registry.register("echo", handle_echo)
    registry.register("sleep", handle_sleep, schema=SleepPayload)
    registry.register("fail", handle_fail, schema=FailPayload)
    registry.register("fail_permanent", handle_fail_permanent, schema=FailPayload)


# Entry point for ``worker_handler_modules``
register = register_builtin_handlers
