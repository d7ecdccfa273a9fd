"""
SQLAlchemy ORM models for Tunesmith.

Tables:
- tunesmith_generation_jobs: one row per music generation request
"""
from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from tunesmith.db.database import Base


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


class JobState(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class VoiceGender(str, enum.Enum):
    MALE = "male"
    FEMALE = "female"
    AUTO = "auto"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})

# Monotonic lifecycle: a job never goes back to pending.
ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset({JobState.PROCESSING, JobState.FAILED}),
    JobState.PROCESSING: frozenset({JobState.COMPLETED, JobState.FAILED}),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
}


class GenerationJob(Base):
    """
    One music generation request and its full lifecycle.

    ``state`` only ever moves forward (see ``ALLOWED_TRANSITIONS``); every
    write goes through ``tunesmith.db.repository`` which guards each update
    on the expected prior state.  ``result_url`` starts as the provider's
    transient URL and is swapped for the durable-storage URL once the
    background migration succeeds.
    """
    __tablename__ = "tunesmith_generation_jobs"
    __table_args__ = (
        Index("ix_tunesmith_generation_jobs_requester_state", "requester_id", "state"),
        Index("ix_tunesmith_generation_jobs_state_created", "state", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    requester_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Request
    prompt_text: Mapped[str] = mapped_column(Text, nullable=False)
    style_tag: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    lyrics: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    wants_instrumental: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    wants_generated_lyrics: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    voice_gender: Mapped[str] = mapped_column(String(8), default=VoiceGender.AUTO.value, nullable=False)
    target_duration_seconds: Mapped[int] = mapped_column(Integer, default=180, nullable=False)

    # Lifecycle
    state: Mapped[str] = mapped_column(String(16), default=JobState.PENDING.value, nullable=False)
    provider_task_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Result
    result_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    durable_storage_ref: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    result_lyrics: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    result_duration_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    result_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    fallback_used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
    )

    @property
    def job_state(self) -> JobState:
        return JobState(self.state)

    @property
    def migrated(self) -> bool:
        return self.durable_storage_ref is not None

    def __repr__(self) -> str:
        return f"<GenerationJob {self.id} state={self.state} requester={self.requester_id}>"
