"""
Database module.
Contains database connection, models, and repository implementations.
"""

from jobqueue.db.connection import Database, create_engine_from_settings
from jobqueue.db.models import Base, Job
from jobqueue.db.repository import JobRepository

__all__ = [
    "Database",
    "create_engine_from_settings",
    "JobRepository",
    "Job",
    "Base",
]
