"""
Application constants.
Centralized location for all constant values used across the engine.
"""

from enum import IntEnum, StrEnum


class JobState(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> ACTIVE (claimed, lease issued, attempts + 1)
    - ACTIVE -> COMPLETED (handler success)
    - ACTIVE -> PENDING (retryable failure or expired lease, attempts left)
    - ACTIVE -> DEAD (attempts exhausted, permanent failure, unknown kind)
    - PENDING -> FAILED (cancelled by the producer before dispatch)
    - DEAD -> PENDING (explicit operator requeue only)
    """

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"


# States in which a dedupe_key blocks a second enqueue
LIVE_STATES: tuple[JobState, ...] = (JobState.PENDING, JobState.ACTIVE)

TERMINAL_STATES: tuple[JobState, ...] = (
    JobState.COMPLETED,
    JobState.FAILED,
    JobState.DEAD,
)


class JobPriority(IntEnum):
    """Named priority levels. Any integer is accepted; higher is claimed first."""

    LOW = -10
    NORMAL = 0
    HIGH = 10
    CRITICAL = 100


# Default values
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_LEASE_DURATION_SECONDS = 30
DEFAULT_PRIORITY = JobPriority.NORMAL

MAX_KIND_LENGTH = 255
MAX_DEDUPE_KEY_LENGTH = 255
MAX_ERROR_LENGTH = 4000
# Leaves room for the slot suffix in a schedule's dedupe key
MAX_SCHEDULE_NAME_LENGTH = 200

CANCELLED_ERROR = "cancelled"


class PayloadEncoding(StrEnum):
    """How the JSON payload column maps back to the value the handler receives."""

    JSON = "json"
    # bytes, stored as a base64 string
    BASE64 = "base64"


# Engine events
EVENT_JOB_ENQUEUED = "job.enqueued"
EVENT_JOB_CLAIMED = "job.claimed"
EVENT_JOB_COMPLETED = "job.completed"
EVENT_JOB_FAILED = "job.failed"
EVENT_JOB_DEAD = "job.dead"
EVENT_JOB_RECLAIMED = "job.reclaimed"
EVENT_JOB_CANCELLED = "job.cancelled"

# Metrics names
METRIC_JOBS_ENQUEUED = "jobqueue_jobs_enqueued_total"
METRIC_JOBS_CLAIMED = "jobqueue_jobs_claimed_total"
METRIC_JOBS_FINISHED = "jobqueue_jobs_finished_total"
METRIC_JOB_DURATION = "jobqueue_job_duration_seconds"
METRIC_LEASES_RECLAIMED = "jobqueue_leases_reclaimed_total"
METRIC_LEASES_LOST = "jobqueue_leases_lost_total"
METRIC_ACTIVE_SLOTS = "jobqueue_active_slots"
METRIC_QUEUE_DEPTH = "jobqueue_queue_depth"
METRIC_STORE_ERRORS = "jobqueue_store_errors_total"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_CLAIM_JOBS = "claim_jobs"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_RECLAIM_LEASES = "reclaim_leases"
SPAN_SWEEP_SCHEDULES = "sweep_schedules"

# Shorthands accepted in place of a five-field cron expression
SCHEDULE_PRESETS: dict[str, str] = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

# API constants
API_V1_PREFIX = "/v1"
