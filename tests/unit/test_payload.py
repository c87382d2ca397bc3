"""
Unit tests for enqueue argument validation and payload encoding.
"""

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
from pydantic import ValidationError

from jobqueue.constants import JobPriority, PayloadEncoding
from jobqueue.errors import PayloadDecodeError
from jobqueue.types.job import (
    EnqueueOptions,
    JobContext,
    decode_payload,
    encode_payload,
)


class TestEnqueueOptions:
    """Tests for producer argument validation."""

    def test_valid_options(self):
        options = EnqueueOptions(
            kind="  email ",
            payload={"to": "a@example.com"},
            delay=5,
            priority=JobPriority.HIGH,
            max_attempts=3,
            dedupe_key="welcome:1",
        )

        assert options.kind == "email"
        assert options.delay == timedelta(seconds=5)
        assert options.priority == 10

    @pytest.mark.parametrize(
        "overrides",
        [
            {"kind": ""},
            {"kind": "   "},
            {"kind": "k" * 256},
            {"delay": -1},
            {"priority": "high"},
            {"priority": True},
            {"priority": 1.5},
            {"max_attempts": 0},
            {"dedupe_key": ""},
            {"dedupe_key": "d" * 256},
            {"payload": {"when": datetime.now(UTC)}},
            {"payload": object()},
        ],
    )
    def test_rejects_invalid_arguments(self, overrides):
        """Test that each invalid argument is rejected."""
        kwargs = {"kind": "email", "payload": None, "max_attempts": 3, **overrides}

        with pytest.raises(ValidationError):
            EnqueueOptions(**kwargs)

    def test_negative_priority_allowed(self):
        options = EnqueueOptions(kind="email", priority=-5, max_attempts=1)

        assert options.priority == -5

    def test_bytes_payload_accepted(self):
        options = EnqueueOptions(kind="blob", payload=b"\x00\x01", max_attempts=1)

        assert options.payload == b"\x00\x01"


class TestPayloadEncoding:
    """Tests for storing payloads in the JSON column."""

    def test_bytes_stored_as_base64(self):
        stored, encoding = encode_payload(b"hello")

        assert stored == "aGVsbG8="
        assert encoding == PayloadEncoding.BASE64
        assert decode_payload(stored, encoding) == b"hello"

    @pytest.mark.parametrize("payload", [None, 1, "text", [1, 2], {"a": {"b": None}}])
    def test_json_values_pass_through(self, payload):
        assert encode_payload(payload) == (payload, PayloadEncoding.JSON)
        assert decode_payload(payload, PayloadEncoding.JSON) == payload

    def test_marker_shaped_dict_stays_a_dict(self):
        """Test that a user dict is never mistaken for a bytes payload."""
        payload = {"__bytes__": "aGVsbG8="}

        stored, encoding = encode_payload(payload)

        assert encoding == PayloadEncoding.JSON
        assert decode_payload(stored, encoding) == {"__bytes__": "aGVsbG8="}

    def test_base64_string_in_json_mode_stays_a_string(self):
        assert decode_payload("aGVsbG8=", "json") == "aGVsbG8="

    @pytest.mark.parametrize("stored", ["not base64!", "abc", 42, {"a": 1}])
    def test_corrupt_base64_raises(self, stored):
        with pytest.raises(PayloadDecodeError):
            decode_payload(stored, PayloadEncoding.BASE64)

    def test_unknown_encoding_raises(self):
        with pytest.raises(PayloadDecodeError):
            decode_payload("x", "gzip")



class TestJobContext:
    """Tests for the handler-facing context."""

    def test_attempt_bookkeeping(self):
        context = JobContext(
            job_id=uuid4(),
            kind="email",
            attempt=3,
            max_attempts=3,
            lease_owner="w1",
            lease_expires_at=datetime.now(UTC),
        )

        assert context.is_last_attempt is True
        assert context.remaining_attempts == 0

    @pytest.mark.asyncio
    async def test_heartbeat_delegates(self):
        calls = []

        async def heartbeat(extension):
            calls.append(extension)
            return False

        context = JobContext(
            job_id=uuid4(),
            kind="email",
            attempt=1,
            max_attempts=3,
            lease_owner="w1",
            lease_expires_at=None,
            _heartbeat=heartbeat,
        )

        assert await context.heartbeat(15) is False
        assert calls == [15]
