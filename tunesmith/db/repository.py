"""Generation job persistence: the single point of DB access for job rows.

The database is the arbitration point for concurrent work on the same job:
every state change is a conditioned ``UPDATE ... WHERE id = :id AND state =
:expected`` and callers learn from the boolean result whether they won.
Functions here never commit; the caller owns the transaction.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tunesmith.db.models import (
    ALLOWED_TRANSITIONS,
    GenerationJob,
    JobState,
    utc_now,
)

logger = logging.getLogger(__name__)

# Columns the lifecycle may write after insert.
_MUTABLE_FIELDS = frozenset({
    "state",
    "provider_task_id",
    "error_message",
    "result_url",
    "durable_storage_ref",
    "result_lyrics",
    "result_title",
    "result_duration_seconds",
    "result_description",
    "fallback_used",
})


class InvalidTransitionError(ValueError):
    """Raised for a transition the job state machine does not allow."""


async def insert_job(session: AsyncSession, job: GenerationJob) -> GenerationJob:
    """Persist a new job row (always ``pending``)."""
    job.state = JobState.PENDING.value
    session.add(job)
    await session.flush()
    return job


async def get_job(session: AsyncSession, job_id: str) -> GenerationJob | None:
    result = await session.execute(select(GenerationJob).where(GenerationJob.id == job_id))
    return result.scalar_one_or_none()


async def update_state(
    session: AsyncSession,
    job_id: str,
    expected_prior_state: JobState,
    fields: Mapping[str, Any],
) -> bool:
    """Conditionally update a job that is still in ``expected_prior_state``.

    ``fields`` may include a new ``state``; the transition is validated
    against the state machine before touching the database.  Setting
    ``provider_task_id`` additionally requires it to be unset, so it is
    written at most once.  Returns True if exactly one row was updated.
    """
    unknown = set(fields) - _MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown job fields: {sorted(unknown)}")

    values = dict(fields)
    target = expected_prior_state
    if "state" in values:
        target = JobState(values["state"])
        if target not in ALLOWED_TRANSITIONS[expected_prior_state]:
            raise InvalidTransitionError(
                f"Job {job_id}: {expected_prior_state.value} → {target.value} is not allowed"
            )
        values["state"] = target.value
    if values.get("result_url") is not None and target is not JobState.COMPLETED:
        raise InvalidTransitionError(f"Job {job_id}: result_url requires the completed state")
    values["updated_at"] = utc_now()

    stmt = (
        update(GenerationJob)
        .where(GenerationJob.id == job_id)
        .where(GenerationJob.state == expected_prior_state.value)
    )
    if "provider_task_id" in values:
        stmt = stmt.where(GenerationJob.provider_task_id.is_(None))

    result = await session.execute(
        stmt.values(**values).execution_options(synchronize_session=False)
    )
    updated = result.rowcount == 1
    if not updated:
        logger.warning(
            f"Job {job_id}: conditioned update from {expected_prior_state.value} "
            f"matched no row (state changed concurrently?)"
        )
    return updated


async def update_result_location(
    session: AsyncSession,
    job_id: str,
    *,
    result_url: str,
    durable_storage_ref: str,
) -> bool:
    """URL swap after durable migration; never changes state."""
    return await update_state(
        session,
        job_id,
        JobState.COMPLETED,
        {"result_url": result_url, "durable_storage_ref": durable_storage_ref},
    )


async def find_pending_by_requester(
    session: AsyncSession,
    requester_id: str,
) -> GenerationJob | None:
    result = await session.execute(
        select(GenerationJob)
        .where(GenerationJob.requester_id == requester_id)
        .where(GenerationJob.state == JobState.PENDING.value)
        .order_by(GenerationJob.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_stale_pending(
    session: AsyncSession,
    older_than: datetime,
) -> list[GenerationJob]:
    """Jobs still ``pending`` that were created before ``older_than``."""
    result = await session.execute(
        select(GenerationJob)
        .where(GenerationJob.state == JobState.PENDING.value)
        .where(GenerationJob.created_at < older_than)
    )
    return list(result.scalars().all())


async def delete_job(session: AsyncSession, job_id: str) -> bool:
    result = await session.execute(delete(GenerationJob).where(GenerationJob.id == job_id))
    return result.rowcount == 1


async def list_jobs(
    session: AsyncSession,
    *,
    requester_id: str | None = None,
    style_tag: str | None = None,
    instrumental: bool | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[GenerationJob], int]:
    """Newest-first page of jobs plus the total count for the same filters."""
    filters = []
    if requester_id is not None:
        filters.append(GenerationJob.requester_id == requester_id)
    if style_tag is not None:
        filters.append(GenerationJob.style_tag == style_tag)
    if instrumental is not None:
        filters.append(GenerationJob.wants_instrumental == instrumental)

    rows = await session.execute(
        select(GenerationJob)
        .where(*filters)
        .order_by(GenerationJob.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    total = await session.scalar(select(func.count()).select_from(GenerationJob).where(*filters))
    return list(rows.scalars().all()), int(total or 0)
