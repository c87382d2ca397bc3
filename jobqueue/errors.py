"""
Error taxonomy for the job queue engine.

Producers only ever see ValidationError, InvalidStateError and
StoreUnavailableError. Everything that happens to a job after enqueue is
captured into ``last_error`` and reported through engine events.
"""

from typing import Any
from uuid import UUID


class JobQueueError(Exception):
    """Base exception for the job queue engine."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(JobQueueError):
    """Raised when enqueue arguments are rejected. No job is created."""


class InvalidStateError(JobQueueError):
    """Raised when an operation is not allowed in the job's current state."""

    def __init__(self, job_id: UUID, state: str, operation: str, reason: str | None = None):
        message = f"Cannot {operation} job {job_id} in state '{state}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message,
            {"job_id": str(job_id), "state": state, "operation": operation},
        )
        self.job_id = job_id
        self.state = state


class UnknownKindError(JobQueueError):
    """Raised when no handler is registered for a job kind."""

    def __init__(self, kind: str):
        super().__init__(f"No handler registered for job kind: {kind}", {"kind": kind})
        self.kind = kind


class PayloadDecodeError(JobQueueError):
    """Raised when a stored payload cannot be decoded for its handler."""


class HandlerError(JobQueueError):
    """Base class for failures signalled by a job handler."""

    retryable: bool = True


class TransientHandlerError(HandlerError):
    """Retryable handler failure (network, timeout, busy dependency)."""

    retryable = True


class PermanentHandlerError(HandlerError):
    """Non-retryable handler failure. The job is dead-lettered immediately."""

    retryable = False


class LeaseLostError(JobQueueError):
    """Raised when a worker no longer owns the lease it is acting on."""

    def __init__(self, job_id: UUID, worker_id: str, operation: str):
        super().__init__(
            f"Lease on job {job_id} no longer held by {worker_id} ({operation})",
            {"job_id": str(job_id), "worker_id": worker_id, "operation": operation},
        )
        self.job_id = job_id
        self.worker_id = worker_id


class StoreUnavailableError(JobQueueError):
    """Raised when the Store cannot be reached. The transaction was rolled back."""
