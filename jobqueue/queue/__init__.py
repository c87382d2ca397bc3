"""
Queue module.
Contains the producer-facing queue client.
"""

from jobqueue.queue.client import QueueClient

__all__ = ["QueueClient"]
