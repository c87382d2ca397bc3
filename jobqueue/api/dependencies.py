"""
Request dependencies for the status API.
"""

from typing import Annotated

from fastapi import Depends, Request

from jobqueue.context import QueueContext
from jobqueue.queue.client import QueueClient


def get_context(request: Request) -> QueueContext:
    """Return the QueueContext the application was created with."""
    return request.app.state.ctx


def get_queue_client(ctx: Annotated[QueueContext, Depends(get_context)]) -> QueueClient:
    return QueueClient(ctx)


Context = Annotated[QueueContext, Depends(get_context)]
Client = Annotated[QueueClient, Depends(get_queue_client)]
