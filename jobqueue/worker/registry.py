"""
Handler registry.

Maps a job kind to the function that executes it. New kinds are added by
registration; the engine never inspects payloads itself.

Job handlers must be idempotent: they may run more than once for the same
job after a worker crash or an expired lease.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from jobqueue.errors import UnknownKindError
from jobqueue.types.job import JobContext, JobResult

logger = logging.getLogger(__name__)

HandlerReturn = JobResult | dict[str, Any] | None
JobHandler = Callable[[Any, JobContext], Awaitable[HandlerReturn] | HandlerReturn]


@dataclass(frozen=True)
class HandlerEntry:
    """A registered handler and its execution options."""

    kind: str
    handler: JobHandler
    schema: type[BaseModel] | None = None
    timeout: float | None = None

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.handler)

    def validate_payload(self, payload: Any) -> Any:
        """
        Validate a payload against the declared schema.

        Returns:
            The schema instance, or the payload unchanged without a schema.

        Raises:
            pydantic.ValidationError: The payload does not match.
        """
        if self.schema is None:
            return payload
        return self.schema.model_validate(payload)


class HandlerRegistry:
    """
    Capability lookup table from job kind to handler.

    Example:
        registry = HandlerRegistry()

        @registry.handler("send_email", schema=SendEmail, timeout=30)
        async def send_email(payload: SendEmail, context: JobContext) -> None:
            ...
    """

    def __init__(self) -> None:
        self._entries: dict[str, HandlerEntry] = {}

    def register(
        self,
        kind: str,
        handler: JobHandler,
        *,
        schema: type[BaseModel] | None = None,
        timeout: float | None = None,
    ) -> HandlerEntry:
        """
        Register a handler for a kind.

        Args:
            kind: The job kind this handler processes.
            handler: ``handler(payload, context)``; async or plain function.
            schema: Optional pydantic model the payload is validated into.
            timeout: Seconds before a run is abandoned as a transient failure.
                None uses the worker default.

        Raises:
            ValueError: The kind is empty or already registered.
        """
        if not kind:
            raise ValueError("kind must not be empty")
        if kind in self._entries:
            raise ValueError(f"Handler already registered for kind: {kind}")
        if timeout is not None and timeout <= 0:
            raise ValueError("timeout must be > 0")

        entry = HandlerEntry(kind=kind, handler=handler, schema=schema, timeout=timeout)
        self._entries[kind] = entry
        logger.info("Registered handler", extra={"kind": kind})
        return entry

    def handler(
        self,
        kind: str,
        *,
        schema: type[BaseModel] | None = None,
        timeout: float | None = None,
    ) -> Callable[[JobHandler], JobHandler]:
        """
        Decorator form of register().

        Returns:
            Decorator returning the handler unchanged.
        """

        def decorator(func: JobHandler) -> JobHandler:
            self.register(kind, func, schema=schema, timeout=timeout)
            return func

        return decorator

    def get(self, kind: str) -> HandlerEntry:
        """
        Look up the handler for a kind.

        Raises:
            UnknownKindError: Nothing is registered for the kind.
        """
        entry = self._entries.get(kind)
        if entry is None:
            raise UnknownKindError(kind)
        return entry

    def unregister(self, kind: str) -> None:
        self._entries.pop(kind, None)

    def kinds(self) -> list[str]:
        """List all registered job kinds."""
        return list(self._entries)

    def __contains__(self, kind: object) -> bool:
        return kind in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[HandlerEntry]:
        return iter(self._entries.values())
