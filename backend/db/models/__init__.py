"""Database models for the email schedule engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.schedule import Schedule
from db.models.execution import Execution
from db.models.execution_lock import ExecutionLock

__all__ = [
    "Schedule",
    "Execution",
    "ExecutionLock",
]
