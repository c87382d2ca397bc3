"""
Runs one handler invocation and turns its outcome into a JobResult.
"""

import asyncio
import logging
import time
from typing import Any

import pydantic

from jobqueue.constants import PayloadEncoding
from jobqueue.errors import HandlerError, PayloadDecodeError
from jobqueue.types.job import JobContext, JobResult, decode_payload
from jobqueue.worker.registry import HandlerEntry

logger = logging.getLogger(__name__)


def _normalize(value: Any) -> JobResult:
    if isinstance(value, JobResult):
        return value
    if value is None:
        return JobResult.ok()
    if isinstance(value, dict):
        return JobResult.ok(value)
    return JobResult.ok({"result": value})


async def execute_job(
    entry: HandlerEntry,
    payload: Any,
    context: JobContext,
    default_timeout: float | None = None,
    payload_encoding: PayloadEncoding | str = PayloadEncoding.JSON,
) -> JobResult:
    """
    Execute a job using its registered handler.

    Never raises for handler failures; cancellation of the calling task
    (worker shutdown past the grace period) propagates.

    Args:
        entry: The registered handler.
        payload: Payload as stored.
        context: The job context.
        default_timeout: Timeout used when the entry declares none.
        payload_encoding: How the stored payload must be decoded.

    Returns:
        JobResult; ``retryable`` is False for permanent failures.
    """
    start = time.monotonic()
    timeout = entry.timeout if entry.timeout is not None else default_timeout

    try:
        decoded = decode_payload(payload, payload_encoding)
    except PayloadDecodeError as exc:
        return JobResult.failure(exc.message, retryable=False)

    try:
        args = (entry.validate_payload(decoded), context)
    except pydantic.ValidationError as exc:
        return JobResult.failure(
            f"Invalid payload for kind {entry.kind}: {exc.error_count()} validation error(s): "
            + "; ".join(err["msg"] for err in exc.errors()),
            retryable=False,
        )

    try:
        if entry.is_async:
            call = entry.handler(*args)
        else:
            # Plain functions run in a thread; a timed-out thread is left to finish
            call = asyncio.to_thread(entry.handler, *args)
        value = await asyncio.wait_for(call, timeout=timeout)
        result = _normalize(value)
    except TimeoutError:
        logger.warning(
            "Handler timed out",
            extra={"job_id": str(context.job_id), "kind": entry.kind, "timeout": timeout},
        )
        result = JobResult.failure(f"Handler timed out after {timeout}s", retryable=True)
    except HandlerError as exc:
        result = JobResult.failure(
            f"{type(exc).__name__}: {exc.message}",
            retryable=exc.retryable,
        )
    except Exception as exc:
        logger.exception(
            "Handler raised exception",
            extra={"job_id": str(context.job_id), "kind": entry.kind},
        )
        result = JobResult.failure(f"{type(exc).__name__}: {exc}", retryable=True)

    result.duration_ms = (time.monotonic() - start) * 1000
    if not result.success and not result.error:
        result.error = "Handler reported failure"
    return result
