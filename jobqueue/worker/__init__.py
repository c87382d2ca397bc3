"""
Worker module.
Contains the handler registry, handler execution and the dispatcher pool.

The process entry point lives in ``jobqueue.worker.main``.
"""

from jobqueue.worker.dispatcher import Dispatcher
from jobqueue.worker.executor import execute_job
from jobqueue.worker.registry import HandlerEntry, HandlerRegistry

__all__ = [
    "Dispatcher",
    "HandlerEntry",
    "HandlerRegistry",
    "execute_job",
]
