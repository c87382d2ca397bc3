"""
Job inspection and operator routes.
"""

from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from jobqueue.api.dependencies import Client
from jobqueue.constants import API_V1_PREFIX, JobState
from jobqueue.db.models import Job
from jobqueue.errors import InvalidStateError
from jobqueue.types.api import (
    JobListResponse,
    JobResponse,
    JobStatsResponse,
    RequeueJobRequest,
)


router = APIRouter(prefix=f"{API_V1_PREFIX}/jobs", tags=["Jobs"])


def _job_to_response(job: Job) -> JobResponse:
    """Convert a Job model to a JobResponse."""
    return JobResponse(
        id=job.id,
        kind=job.kind,
        payload=job.payload,
        payload_encoding=job.payload_encoding,
        state=job.state,
        priority=job.priority,
        run_after=job.run_after,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        lease_owner=job.lease_owner,
        lease_expires_at=job.lease_expires_at,
        dedupe_key=job.dedupe_key,
        last_error=job.last_error,
        result=job.result,
        created_at=job.created_at,
        updated_at=job.updated_at,
        completed_at=job.completed_at,
    )


@router.get(
    "/stats",
    response_model=JobStatsResponse,
    summary="Get job statistics",
    description="Job counts per state.",
)
async def get_job_stats(client: Client) -> JobStatsResponse:
    counts = await client.stats()
    return JobStatsResponse(counts=counts, total=sum(counts.values()))


@router.get(
    "/{job_id}",
    response_model=JobResponse,
    summary="Get job details",
    description="Get detailed information about a specific job.",
)
async def get_job(job_id: UUID, client: Client) -> JobResponse:
    """
    Get job details by ID.

    Raises:
        HTTPException: If job not found.
    """
    job = await client.get_job(job_id)

    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )

    return _job_to_response(job)


@router.get(
    "",
    response_model=JobListResponse,
    summary="List jobs",
    description="List jobs newest first, optionally filtered by state and kind.",
)
async def list_jobs(
    client: Client,
    state: JobState | None = Query(default=None),
    kind: str | None = Query(default=None, max_length=255),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> JobListResponse:
    jobs, total = await client.list_jobs(state=state, kind=kind, limit=limit, offset=offset)

    return JobListResponse(
        jobs=[_job_to_response(job) for job in jobs],
        total=total,
        limit=limit,
        offset=offset,
        has_next=(offset + limit) < total,
    )


@router.post(
    "/{job_id}/requeue",
    response_model=JobResponse,
    summary="Requeue a dead job",
    description="Move a dead-lettered job back to pending. Operator action.",
)
async def requeue_job(
    job_id: UUID,
    client: Client,
    request: RequeueJobRequest | None = None,
) -> JobResponse:
    """
    Requeue a job from the dead-letter state.

    Raises:
        HTTPException: 404 if the job is not found, 409 if it is not dead
            or a live job already holds its dedupe key.
    """
    request = request or RequeueJobRequest()
    try:
        job = await client.requeue_dead(job_id, reset_attempts=request.reset_attempts)
    except InvalidStateError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=exc.message,
        ) from exc

    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )

    return _job_to_response(job)
