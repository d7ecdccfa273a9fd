"""Read path for generation jobs and engine health.

Nothing here mutates state; callers may poll as often as they like
independently of the orchestrator's own polling loop.
"""
from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from tunesmith.config import AVAILABLE_DURATIONS
from tunesmith.db import repository
from tunesmith.models.responses import (
    CircuitBreakerView,
    DurationOption,
    EngineStatusView,
    JobListView,
    JobView,
)
from tunesmith.services.errors import NotFoundError
from tunesmith.services.lyrics import LyricsClient
from tunesmith.services.provider import ProviderClient
from tunesmith.services.storage import DurableStorage

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 50


async def get_status(session: AsyncSession, job_id: str) -> JobView:
    """Current view of a job; ``result_url`` only once completed."""
    job = await repository.get_job(session, job_id)
    if job is None:
        raise NotFoundError(f"Job {job_id} not found")
    return JobView.from_job(job)


async def list_jobs(
    session: AsyncSession,
    *,
    requester_id: str | None = None,
    style_tag: str | None = None,
    instrumental: bool | None = None,
    page: int = 1,
    limit: int = 10,
) -> JobListView:
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)
    rows, total = await repository.list_jobs(
        session,
        requester_id=requester_id,
        style_tag=style_tag,
        instrumental=instrumental,
        page=page,
        limit=limit,
    )
    return JobListView(
        jobs=[JobView.from_job(job) for job in rows],
        total=total,
        page=page,
        limit=limit,
    )


def engine_status(
    provider: ProviderClient,
    lyrics: LyricsClient,
    storage: DurableStorage,
) -> EngineStatusView:
    """Which collaborators are configured, plus the shared breaker snapshot."""
    snapshot = provider.breaker.snapshot()
    return EngineStatusView(
        provider_enabled=provider.configured,
        lyrics_enabled=lyrics.configured,
        durable_storage_enabled=storage.configured,
        circuit_breaker=CircuitBreakerView(**snapshot),
    )


def duration_options() -> list[DurationOption]:
    return [
        DurationOption(value=seconds, label=f"{seconds // 60} min")
        for seconds in AVAILABLE_DURATIONS
    ]
