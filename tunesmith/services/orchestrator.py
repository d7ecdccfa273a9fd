"""
Generation Orchestrator.

Owns a generation job from acceptance to a terminal state:

    accept   sweep stale jobs, reject duplicates, insert ``pending``
    step A   best-effort lyric draft (text-generation provider)
    step B   submit to the music provider, ``pending -> processing``
    step C   poll until audio appears, ``processing -> completed``
    timeout  text-only fallback, ``completed`` with a placeholder asset
    after    detached durable-storage migration (URL swap only)

Every state write is a conditioned update in ``tunesmith.db.repository``;
when one matches no row, another actor already moved the job and this
lifecycle stops quietly.  The only lock is the per-requester accept lock,
held around the duplicate check and insert and never across a provider call.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import timedelta
from typing import Any, AsyncIterator, Callable, Coroutine, Mapping

import httpx
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from tunesmith.config import settings
from tunesmith.db import repository
from tunesmith.db.database import AsyncSessionLocal
from tunesmith.db.models import GenerationJob, JobState, utc_now
from tunesmith.models.requests import GenerationRequest
from tunesmith.models.responses import JobView
from tunesmith.services.errors import (
    REJECTED_MESSAGE,
    RETRY_LATER_MESSAGE,
    DuplicateInFlightError,
    ForbiddenError,
    MusicEngineError,
    NotFoundError,
    ProviderTimeoutError,
    ValidationError,
)
from tunesmith.services.lyrics import LyricsClient, LyricsGenerationError, get_lyrics_client
from tunesmith.services.migration import run_migration
from tunesmith.services.provider import (
    ProviderClient,
    ProviderResult,
    build_submission,
    get_provider_client,
    normalize_prompt,
    result_duration,
)
from tunesmith.services.storage import DurableStorage, get_durable_storage

logger = logging.getLogger(__name__)

STALE_JOB_MESSAGE = "Music generation did not start in time. Please try again."

_FALLBACK_TITLE_CHARS = 50


def failure_message(exc: MusicEngineError) -> str:
    """User-facing text for a failed job: "try again later" vs "rejected"."""
    if exc.user_message:
        return exc.user_message
    return RETRY_LATER_MESSAGE if exc.retry_later else REJECTED_MESSAGE


def _coerce_request(request: GenerationRequest | Mapping[str, Any]) -> GenerationRequest:
    """Validate a request before any job row exists.

    Includes the provider prompt normalization, so a prompt made only of
    punctuation is rejected here instead of failing the job later.
    """
    if isinstance(request, GenerationRequest):
        req = request
    else:
        try:
            req = GenerationRequest.model_validate(request)
        except PydanticValidationError as exc:
            first = exc.errors()[0]
            field = ".".join(str(p) for p in first.get("loc", ())) or "request"
            raise ValidationError(f"{field}: {first.get('msg', 'invalid value')}") from exc
    if not normalize_prompt(req.prompt_text):
        raise ValidationError("promptText: no usable words after normalization")
    return req


class GenerationOrchestrator:
    """Runs generation job lifecycles.

    Collaborators default to the process-wide singletons; tests pass fakes.
    ``session_factory`` is any zero-argument callable returning an
    ``AsyncSession`` usable as an async context manager.
    """

    def __init__(
        self,
        provider: ProviderClient | None = None,
        lyrics: LyricsClient | None = None,
        storage: DurableStorage | None = None,
        session_factory: Callable[[], AsyncSession] | None = None,
        download_client: httpx.AsyncClient | None = None,
    ):
        self.provider = provider or get_provider_client()
        self.lyrics = lyrics or get_lyrics_client()
        self.storage = storage or get_durable_storage()
        self._session_factory = session_factory or AsyncSessionLocal
        self._download_client = download_client
        self._background: set[asyncio.Task[Any]] = set()
        # requester_id -> (lock, number of accepts holding or waiting on it)
        self._accept_locks: dict[str, tuple[asyncio.Lock, int]] = {}

    # ── Public operations ──────────────────────────────────────────────

    async def create_job(
        self,
        request: GenerationRequest | Mapping[str, Any],
        requester_id: str | None = None,
    ) -> JobView:
        """Accept a request and drive it to a terminal state.

        Returns as soon as the job is ``completed`` or ``failed``; the durable
        storage migration is scheduled but never awaited.  Raises
        ``ValidationError`` or ``DuplicateInFlightError`` before any job is
        created, and re-raises unexpected errors after marking the job failed.
        """
        req = _coerce_request(request)
        job_id = await self._accept(req, requester_id)
        transient_url = await self._run(job_id, req)
        view = await self._view(job_id)
        if transient_url:
            self._schedule_migration(job_id, transient_url)
        return view

    async def submit_job(
        self,
        request: GenerationRequest | Mapping[str, Any],
        requester_id: str | None = None,
    ) -> JobView:
        """Accept a request and run its lifecycle in the background.

        Returns the ``pending`` view right away so a UI can poll
        ``get_status``.
        """
        req = _coerce_request(request)
        job_id = await self._accept(req, requester_id)
        view = await self._view(job_id)
        self._spawn(self._run_detached(job_id, req), name=f"generation-{job_id}")
        return view

    async def reclaim_stale_jobs(self) -> int:
        """Force-fail jobs stuck in ``pending`` past the stale threshold."""
        cutoff = utc_now() - timedelta(minutes=settings.stale_job_minutes)
        reclaimed = 0
        async with self._session_factory() as session:
            for job in await repository.find_stale_pending(session, cutoff):
                if await repository.update_state(
                    session,
                    job.id,
                    JobState.PENDING,
                    {"state": JobState.FAILED, "error_message": STALE_JOB_MESSAGE},
                ):
                    reclaimed += 1
            await session.commit()
        if reclaimed:
            logger.info(f"🧹 Reclaimed {reclaimed} stale pending job(s)")
        return reclaimed

    async def delete_job(self, job_id: str, requester_id: str) -> None:
        """Delete a job owned by ``requester_id``."""
        async with self._session_factory() as session:
            job = await repository.get_job(session, job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")
            if job.requester_id != requester_id:
                raise ForbiddenError(f"Requester {requester_id} does not own job {job_id}")
            await repository.delete_job(session, job_id)
            await session.commit()
        logger.info(f"🗑️ Job {job_id} deleted by requester {requester_id}")

    async def wait_for_background(self) -> None:
        """Wait for every detached lifecycle and migration task to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel detached tasks (application shutdown)."""
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} background generation task(s)")

    @property
    def background_task_count(self) -> int:
        return len(self._background)

    # ── Acceptance ─────────────────────────────────────────────────────

    async def _accept(self, req: GenerationRequest, requester_id: str | None) -> str:
        await self.reclaim_stale_jobs()

        async with self._requester_lock(requester_id), self._session_factory() as session:
            if requester_id:
                existing = await repository.find_pending_by_requester(session, requester_id)
                if existing is not None:
                    logger.info(
                        f"⛔ Requester {requester_id} already has pending job {existing.id}"
                    )
                    raise DuplicateInFlightError(requester_id, existing.id)

            job = await repository.insert_job(
                session,
                GenerationJob(
                    requester_id=requester_id,
                    prompt_text=req.prompt_text,
                    style_tag=req.style_tag,
                    title=req.effective_title,
                    lyrics=req.lyrics,
                    wants_instrumental=req.wants_instrumental,
                    wants_generated_lyrics=req.wants_generated_lyrics,
                    voice_gender=req.voice_gender.value,
                    target_duration_seconds=req.target_duration_seconds,
                ),
            )
            job_id = job.id
            await session.commit()

        logger.info(f"🎵 Job {job_id} accepted (requester={requester_id or 'anonymous'})")
        return job_id

    @contextlib.asynccontextmanager
    async def _requester_lock(self, requester_id: str | None) -> AsyncIterator[None]:
        """Serialize duplicate-check-plus-insert for one requester.

        Anonymous requests are never deduplicated and take no lock.  The entry
        is dropped once no accept for that requester holds or awaits it.
        """
        if not requester_id:
            yield
            return
        lock, users = self._accept_locks.get(requester_id, (asyncio.Lock(), 0))
        self._accept_locks[requester_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._accept_locks[requester_id]
            if users <= 1:
                del self._accept_locks[requester_id]
            else:
                self._accept_locks[requester_id] = (lock, users - 1)

    # ── Lifecycle ──────────────────────────────────────────────────────

    async def _run_detached(self, job_id: str, req: GenerationRequest) -> None:
        transient_url = await self._run(job_id, req)
        if transient_url:
            self._schedule_migration(job_id, transient_url)

    async def _run(self, job_id: str, req: GenerationRequest) -> str | None:
        """Drive one job to a terminal state.

        Returns the provider URL to copy into durable storage, or None when
        there is nothing to migrate (failed job, fallback result, lost race).
        """
        state = JobState.PENDING
        try:
            lyrics = await self._draft_lyrics(job_id, req)
            submission = build_submission(
                prompt_text=req.prompt_text,
                lyrics=lyrics,
                title=req.effective_title,
                instrumental=req.wants_instrumental,
                voice_gender=req.voice_gender.value,
            )

            started_at = self.provider.clock()
            task_id = await self.provider.submit(submission)
            if not await self._transition(
                job_id,
                JobState.PENDING,
                {"state": JobState.PROCESSING, "provider_task_id": task_id},
            ):
                return None
            state = JobState.PROCESSING

            try:
                result = await self.provider.wait_for_completion(task_id, started_at=started_at)
            except ProviderTimeoutError as timeout:
                result = await self._fallback(job_id, req, lyrics, timeout)

            if not await self._transition(
                job_id,
                JobState.PROCESSING,
                {
                    "state": JobState.COMPLETED,
                    "result_url": result.audio_url,
                    "result_lyrics": result.lyrics or lyrics or None,
                    "result_title": result.title or submission.title,
                    "result_duration_seconds": result_duration(result, req.target_duration_seconds),
                    "result_description": result.description,
                    "fallback_used": result.fallback_used,
                },
            ):
                return None
            logger.info(
                f"✅ Job {job_id} completed"
                f"{' via fallback' if result.fallback_used else ''}: {result.audio_url}"
            )

            return None if result.fallback_used else result.audio_url

        except MusicEngineError as exc:
            logger.warning(f"❌ Job {job_id} failed ({type(exc).__name__}): {exc.detail}")
            await self._transition(
                job_id,
                state,
                {"state": JobState.FAILED, "error_message": failure_message(exc)},
            )
            return None
        except Exception:
            logger.exception(f"❌ Job {job_id} failed with an unexpected error")
            await self._transition(
                job_id,
                state,
                {"state": JobState.FAILED, "error_message": RETRY_LATER_MESSAGE},
            )
            raise

    async def _draft_lyrics(self, job_id: str, req: GenerationRequest) -> str:
        """Step A.  Never fails the job: an empty string means provider auto-lyrics."""
        if req.lyrics:
            return req.lyrics
        if not req.needs_lyric_draft:
            return ""
        if not self.lyrics.configured:
            logger.info(f"Job {job_id}: lyric drafting not configured, using auto-lyrics")
            return ""
        try:
            drafted = await self.lyrics.draft_lyrics(req.prompt_text, req.style_tag)
        except LyricsGenerationError as exc:
            logger.warning(f"⚠️ Job {job_id}: lyric draft failed, using auto-lyrics: {exc}")
            return ""
        logger.info(f"📝 Job {job_id}: drafted {len(drafted)} chars of lyrics")
        return drafted

    async def _fallback(
        self,
        job_id: str,
        req: GenerationRequest,
        lyrics: str,
        timeout: ProviderTimeoutError,
    ) -> ProviderResult:
        """Text-only placeholder result after a polling timeout.

        Re-raises ``timeout`` when no placeholder track is configured or the
        text provider is unavailable, so the job fails with the timeout message.
        """
        logger.warning(f"⏰ Job {job_id}: provider timed out, trying text fallback")
        if not settings.fallback_audio_url or not self.lyrics.configured:
            raise timeout
        try:
            description = await self.lyrics.describe_track(req.prompt_text, req.style_tag, lyrics)
        except LyricsGenerationError as exc:
            logger.warning(f"⚠️ Job {job_id}: fallback failed: {exc}")
            raise timeout from exc
        return ProviderResult(
            audio_url=settings.fallback_audio_url,
            duration_seconds=req.target_duration_seconds,
            lyrics=lyrics or None,
            title=req.prompt_text[:_FALLBACK_TITLE_CHARS],
            description=description,
            fallback_used=True,
        )

    async def _transition(
        self,
        job_id: str,
        expected: JobState,
        fields: Mapping[str, Any],
    ) -> bool:
        async with self._session_factory() as session:
            updated = await repository.update_state(session, job_id, expected, fields)
            await session.commit()
        if not updated:
            logger.info(f"Job {job_id}: no longer {expected.value}, stopping this lifecycle")
        return updated

    async def _view(self, job_id: str) -> JobView:
        async with self._session_factory() as session:
            job = await repository.get_job(session, job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")
            return JobView.from_job(job)

    # ── Detached work ──────────────────────────────────────────────────

    def _schedule_migration(self, job_id: str, transient_url: str) -> None:
        self._spawn(
            run_migration(
                job_id,
                transient_url,
                storage=self.storage,
                session_factory=self._session_factory,
                http_client=self._download_client,
            ),
            name=f"migration-{job_id}",
        )

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._forget)
        return task

    def _forget(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task {task.get_name()} ended with {type(exc).__name__}: {exc}")


# ---------------------------------------------------------------------------
# Module-level singleton used by the HTTP routes
# ---------------------------------------------------------------------------

_orchestrator: GenerationOrchestrator | None = None


def get_orchestrator() -> GenerationOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = GenerationOrchestrator()
    return _orchestrator


async def shutdown_orchestrator() -> None:
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.shutdown()
        _orchestrator = None
