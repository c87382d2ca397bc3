"""
Retry module.
Contains the backoff policy that decides retries and dead-lettering.
"""

from jobqueue.retry.policy import RetryPolicy

__all__ = ["RetryPolicy"]
