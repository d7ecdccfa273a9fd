"""
Database module for Tunesmith.

Provides async SQLAlchemy support with PostgreSQL and SQLite.
"""
from __future__ import annotations

from tunesmith.db.database import (
    get_db,
    init_db,
    close_db,
    AsyncSessionLocal,
)
from tunesmith.db.models import GenerationJob, JobState, VoiceGender

__all__ = [
    "get_db",
    "init_db",
    "close_db",
    "AsyncSessionLocal",
    "GenerationJob",
    "JobState",
    "VoiceGender",
]
