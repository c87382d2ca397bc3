"""
API module.
Contains the FastAPI status application.
"""

from jobqueue.api.main import create_app, create_server

__all__ = ["create_app", "create_server"]
