"""
Reaper module.
Recovers jobs whose lease expired without a committed outcome.
"""

from jobqueue.reaper.main import Reaper

__all__ = ["Reaper"]
