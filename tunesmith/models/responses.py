"""Response models for the Tunesmith API."""
from __future__ import annotations

from datetime import datetime

from pydantic import Field

from tunesmith.db.models import GenerationJob, JobState
from tunesmith.models.base import CamelModel


class JobView(CamelModel):
    """Caller-facing snapshot of a generation job."""

    job_id: str
    state: JobState
    requester_id: str | None = None
    provider_task_id: str | None = None
    result_url: str | None = Field(
        default=None,
        description="Durable URL once migrated, the provider's transient URL before that",
    )
    migrated: bool = False
    fallback_used: bool = False
    title: str | None = None
    lyrics: str | None = None
    duration_seconds: int | None = None
    description: str | None = None
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job: GenerationJob) -> "JobView":
        completed = job.state == JobState.COMPLETED.value
        return cls(
            job_id=job.id,
            state=JobState(job.state),
            requester_id=job.requester_id,
            provider_task_id=job.provider_task_id,
            result_url=job.result_url if completed else None,
            migrated=job.durable_storage_ref is not None,
            fallback_used=job.fallback_used,
            title=job.result_title or job.title,
            lyrics=job.result_lyrics,
            duration_seconds=job.result_duration_seconds,
            description=job.result_description,
            error_message=job.error_message,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class JobListView(CamelModel):
    jobs: list[JobView]
    total: int
    page: int
    limit: int


class CircuitBreakerView(CamelModel):
    state: str
    failure_count: int
    threshold: int
    retry_after_seconds: float


class EngineStatusView(CamelModel):
    """Which collaborators are configured plus the shared breaker state."""

    provider_enabled: bool
    lyrics_enabled: bool
    durable_storage_enabled: bool
    circuit_breaker: CircuitBreakerView


class DurationOption(CamelModel):
    value: int
    label: str
