"""
Durable Job Queue Engine

A database-backed background job queue with lease-based dispatch,
retry with exponential backoff, dead-lettering, and graceful shutdown.
"""

from jobqueue.context import QueueContext, create_context
from jobqueue.errors import (
    InvalidStateError,
    JobQueueError,
    LeaseLostError,
    PayloadDecodeError,
    PermanentHandlerError,
    StoreUnavailableError,
    TransientHandlerError,
    UnknownKindError,
    ValidationError,
)
from jobqueue.queue.client import QueueClient
from jobqueue.worker.registry import HandlerRegistry

__version__ = "1.0.0"

__all__ = [
    "QueueContext",
    "create_context",
    "QueueClient",
    "HandlerRegistry",
    "JobQueueError",
    "ValidationError",
    "InvalidStateError",
    "UnknownKindError",
    "TransientHandlerError",
    "PayloadDecodeError",
    "PermanentHandlerError",
    "LeaseLostError",
    "StoreUnavailableError",
]
