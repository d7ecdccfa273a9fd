"""Background migration of generated audio from the provider to durable storage.

Runs as a detached task after a job completes with a provider URL.  The job
row is already ``completed`` with the transient URL by the time this starts;
success only swaps ``result_url``/``durable_storage_ref``, and failure is
logged and otherwise ignored so the transient URL keeps working.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tunesmith.config import settings
from tunesmith.db import repository
from tunesmith.services.errors import StorageMigrationError
from tunesmith.services.storage import DurableStorage, StorageUnavailableError

logger = logging.getLogger(__name__)

_DOWNLOAD_HEADERS = {"User-Agent": "Mozilla/5.0 (compatible; Tunesmith/1.0)"}

SessionFactory = Callable[[], AsyncSession]


def storage_key_for(job_id: str, now_ms: int | None = None) -> str:
    """Object key for a job's audio; the timestamp keeps retries from colliding."""
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{settings.storage_key_prefix}{job_id}_{stamp}.mp3"


async def _download(client: httpx.AsyncClient, url: str) -> bytes:
    try:
        response = await client.get(url, headers=_DOWNLOAD_HEADERS)
    except httpx.HTTPError as exc:
        raise StorageMigrationError(f"Download of {url} failed: {exc}") from exc
    if response.status_code >= 400:
        raise StorageMigrationError(f"Download of {url} failed with HTTP {response.status_code}")
    return response.content


async def migrate_job_asset(
    job_id: str,
    transient_url: str,
    *,
    storage: DurableStorage,
    session_factory: SessionFactory,
    http_client: httpx.AsyncClient | None = None,
) -> str:
    """Copy a job's audio into durable storage and point the job at it.

    Returns the durable public URL.  Raises ``StorageMigrationError`` on any
    failure; the job's state is never touched.
    """
    logger.info(f"🔄 [Migration] Job {job_id}: copying provider audio to durable storage")

    if http_client is None:
        async with httpx.AsyncClient(
            follow_redirects=True,
            timeout=settings.migration_download_timeout,
        ) as client:
            data = await _download(client, transient_url)
    else:
        data = await _download(http_client, transient_url)

    if not data:
        raise StorageMigrationError(f"Downloaded audio for job {job_id} is empty")
    logger.info(f"📊 [Migration] Job {job_id}: downloaded {len(data) // 1024}KB")

    key = storage_key_for(job_id)
    try:
        public_url = await storage.upload(
            data,
            key,
            content_type="audio/mpeg",
            metadata={
                "job-id": job_id,
                "original-url": transient_url[:1024],
                "uploaded-at": datetime.now(timezone.utc).isoformat(),
            },
        )
        await storage.make_public(key)
        exists = await storage.exists(key)
    except StorageUnavailableError as exc:
        raise StorageMigrationError(f"Upload for job {job_id} failed: {exc}") from exc
    if not exists:
        raise StorageMigrationError(f"Object {key} missing after upload")

    try:
        async with session_factory() as session:
            swapped = await repository.update_result_location(
                session,
                job_id,
                result_url=public_url,
                durable_storage_ref=key,
            )
            await session.commit()
    except SQLAlchemyError as exc:
        raise StorageMigrationError(f"Could not record durable URL for job {job_id}: {exc}") from exc
    if not swapped:
        raise StorageMigrationError(f"Job {job_id} is no longer completed; durable URL not recorded")

    logger.info(f"✅ [Migration] Job {job_id} stored durably: {public_url}")
    return public_url


async def run_migration(
    job_id: str,
    transient_url: str,
    *,
    storage: DurableStorage,
    session_factory: SessionFactory,
    http_client: httpx.AsyncClient | None = None,
) -> str | None:
    """Error boundary for the detached migration task."""
    try:
        return await migrate_job_asset(
            job_id,
            transient_url,
            storage=storage,
            session_factory=session_factory,
            http_client=http_client,
        )
    except StorageMigrationError as exc:
        logger.warning(f"⚠️ [Migration] Job {job_id} keeps its provider URL: {exc.detail}")
    except Exception:
        logger.exception(f"⚠️ [Migration] Job {job_id} failed unexpectedly; provider URL kept")
    return None
