"""
Lease module.
Contains the lease manager: claim, heartbeat, commit and reclaim.
"""

from jobqueue.lease.manager import LeaseManager

__all__ = ["LeaseManager"]
