"""Database models for the execution engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.batch import BatchRecord, ExecutionRecord

__all__ = [
    "BatchRecord",
    "ExecutionRecord",
]
