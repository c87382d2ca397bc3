"""
Job-related type definitions for internal use.
"""

import base64
import binascii
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from pydantic import BaseModel, field_validator

from jobqueue.constants import (
    DEFAULT_PRIORITY,
    MAX_DEDUPE_KEY_LENGTH,
    MAX_KIND_LENGTH,
    PayloadEncoding,
)
from jobqueue.errors import PayloadDecodeError


class EnqueueOptions(BaseModel):
    """
    Validated arguments of a producer's enqueue call.
    """

    kind: str
    payload: Any = None
    delay: timedelta | None = None
    run_after: datetime | None = None
    priority: int = int(DEFAULT_PRIORITY)
    max_attempts: int
    dedupe_key: str | None = None

    @field_validator("kind")
    @classmethod
    def _kind(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("kind must not be empty")
        if len(value) > MAX_KIND_LENGTH:
            raise ValueError(f"kind must be at most {MAX_KIND_LENGTH} characters")
        return value

    @field_validator("delay", mode="before")
    @classmethod
    def _delay(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return timedelta(seconds=value)
        return value

    @field_validator("delay")
    @classmethod
    def _non_negative_delay(cls, value: timedelta | None) -> timedelta | None:
        if value is not None and value < timedelta(0):
            raise ValueError("delay must not be negative")
        return value

    @field_validator("priority", mode="before")
    @classmethod
    def _priority(cls, value: Any) -> Any:
        # bool is an int subclass; reject it explicitly
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError("priority must be an integer")
        return int(value)

    @field_validator("max_attempts")
    @classmethod
    def _max_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_attempts must be >= 1")
        return value

    @field_validator("dedupe_key")
    @classmethod
    def _dedupe_key(cls, value: str | None) -> str | None:
        if value is None:
            return None
        if not value:
            raise ValueError("dedupe_key must not be empty")
        if len(value) > MAX_DEDUPE_KEY_LENGTH:
            raise ValueError(
                f"dedupe_key must be at most {MAX_DEDUPE_KEY_LENGTH} characters"
            )
        return value

    @field_validator("payload")
    @classmethod
    def _payload(cls, value: Any) -> Any:
        encoded, _ = encode_payload(value)
        try:
            json.dumps(encoded)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"payload is not JSON-serializable: {exc}") from exc
        return value


def encode_payload(payload: Any) -> tuple[Any, PayloadEncoding]:
    """
    Prepare a payload for the JSON column.

    Returns:
        (stored value, encoding). Bytes become a base64 string; everything
        else is stored as given.
    """
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(payload)).decode("ascii"), PayloadEncoding.BASE64
    return payload, PayloadEncoding.JSON


def decode_payload(stored: Any, encoding: PayloadEncoding | str = PayloadEncoding.JSON) -> Any:
    """
    Inverse of encode_payload.

    Raises:
        PayloadDecodeError: The stored value does not match its encoding.
    """
    if encoding == PayloadEncoding.JSON:
        return stored
    if encoding == PayloadEncoding.BASE64:
        if not isinstance(stored, str):
            raise PayloadDecodeError(
                f"base64 payload must be a string, got {type(stored).__name__}"
            )
        try:
            return base64.b64decode(stored, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise PayloadDecodeError(f"Corrupt base64 payload: {exc}") from exc
    raise PayloadDecodeError(f"Unknown payload encoding: {encoding!r}")



class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers (or built by the executor) after processing.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    retryable: bool = True
    duration_ms: float | None = None

    @classmethod
    def ok(cls, output: dict[str, Any] | None = None) -> "JobResult":
        return cls(success=True, output=output)

    @classmethod
    def failure(cls, error: str, retryable: bool = True) -> "JobResult":
        return cls(success=False, error=error, retryable=retryable)


HeartbeatFn = Callable[[float | None], Awaitable[bool]]


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata and the lease heartbeat handle.
    """

    job_id: UUID
    kind: str
    attempt: int
    max_attempts: int
    lease_owner: str
    lease_expires_at: datetime | None
    _heartbeat: HeartbeatFn | None = field(default=None, repr=False)

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last dispatch attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining dispatch attempts after this one."""
        return max(0, self.max_attempts - self.attempt)

    async def heartbeat(self, extension: float | None = None) -> bool:
        """
        Extend the lease on this job.

        Returns False when the lease has been lost; the handler should then
        stop doing external work as another worker may own the job.
        """
        if self._heartbeat is None:
            return True
        return await self._heartbeat(extension)


@dataclass
class RetryDecision:
    """Outcome of the retry policy for a failed attempt."""

    dead: bool
    retry_at: datetime | None = None
    delay_seconds: float = 0.0
