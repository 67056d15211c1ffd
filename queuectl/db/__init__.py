"""
Database module.
Contains database connection, models, and repository implementations.
"""

from queuectl.db.connection import (
    close_db,
    create_schema,
    get_async_session,
    get_engine,
    get_session_context,
    get_test_engine,
    init_db,
)
from queuectl.db.models import Base, ConfigEntry, Job, WorkerRecord

__all__ = [
    "get_async_session",
    "get_session_context",
    "get_engine",
    "get_test_engine",
    "create_schema",
    "init_db",
    "close_db",
    "Job",
    "ConfigEntry",
    "WorkerRecord",
    "Base",
]
