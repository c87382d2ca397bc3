"""
Type definitions for the job queue.
Contains input/output type definitions shared across modules.
"""

from jobqueue.types.api import (
    HealthResponse,
    JobListResponse,
    JobResponse,
    JobStatsResponse,
    RequeueJobRequest,
)
from jobqueue.types.events import JobEvent
from jobqueue.types.job import (
    EnqueueOptions,
    JobContext,
    JobResult,
    RetryDecision,
    decode_payload,
    encode_payload,
)

__all__ = [
    # API types
    "JobResponse",
    "JobListResponse",
    "JobStatsResponse",
    "RequeueJobRequest",
    "HealthResponse",
    # Job types
    "EnqueueOptions",
    "JobContext",
    "JobResult",
    "RetryDecision",
    "encode_payload",
    "decode_payload",
    # Event types
    "JobEvent",
]
