"""
API request and response type definitions for the status server.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from jobqueue.constants import JobState, PayloadEncoding


class JobResponse(BaseModel):
    """Full job details response."""

    id: UUID
    kind: str
    payload: Any
    payload_encoding: PayloadEncoding
    state: JobState
    priority: int
    run_after: datetime
    attempts: int
    max_attempts: int
    lease_owner: str | None
    lease_expires_at: datetime | None
    dedupe_key: str | None
    last_error: str | None
    result: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


class JobListResponse(BaseModel):
    """Paginated list of jobs."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int
    has_next: bool


class JobStatsResponse(BaseModel):
    """Job counts by state."""

    counts: dict[str, int]
    total: int


class RequeueJobRequest(BaseModel):
    """Request body for requeueing a dead-lettered job."""

    reset_attempts: bool = Field(
        default=True, description="Reset attempt counter to 0"
    )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str
    worker_id: str
    database: str
    timestamp: datetime
