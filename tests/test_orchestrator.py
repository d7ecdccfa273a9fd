"""Tests for tunesmith.services.orchestrator.GenerationOrchestrator."""
from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

from tunesmith.config import settings
from tunesmith.db import repository
from tunesmith.db.models import GenerationJob, JobState, utc_now
from tunesmith.services.errors import (
    REJECTED_MESSAGE,
    RETRY_LATER_MESSAGE,
    TIMEOUT_MESSAGE,
    CircuitOpenError,
    DuplicateInFlightError,
    ForbiddenError,
    NotFoundError,
    ProviderTerminalError,
    ProviderTimeoutError,
    ProviderTransientError,
    ValidationError,
)
from tunesmith.services.lyrics import LyricsGenerationError
from tunesmith.services.orchestrator import STALE_JOB_MESSAGE, GenerationOrchestrator
from tunesmith.services.provider import ProviderClient, ProviderResult
from tunesmith.services.resilience import CircuitBreaker
from tunesmith.services.status import get_status

LULLABY = {
    "promptText": "gentle piano lullaby",
    "wantsInstrumental": True,
    "wantsGeneratedLyrics": False,
}


async def _job(session_factory, job_id: str) -> GenerationJob:
    async with session_factory() as session:
        job = await repository.get_job(session, job_id)
        assert job is not None
        return job


async def _count_jobs(session_factory) -> int:
    async with session_factory() as session:
        _, total = await repository.list_jobs(session)
        return total


# ---------------------------------------------------------------------------
# Happy path and the end-to-end example
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_job_completes_with_transient_url(orchestrator, provider, session_factory) -> None:
    provider.wait_for_completion.return_value = ProviderResult(
        audio_url="https://provider/x.mp3", duration_seconds=180, title="Lullaby"
    )

    view = await orchestrator.create_job(LULLABY, requester_id="R1")

    assert view.state is JobState.COMPLETED
    assert view.result_url == "https://provider/x.mp3"
    assert view.provider_task_id == "T1"
    assert view.duration_seconds == 180
    assert view.fallback_used is False
    provider.wait_for_completion.assert_awaited_once_with("T1", started_at=0.0)


@pytest.mark.asyncio
async def test_example_scenario_end_to_end(
    fake_clock, lyrics, storage, download_client, session_factory
) -> None:
    """R1 submits, T1 is in progress for two polls, third poll returns audio."""
    provider = ProviderClient(
        base_url="https://provider.test",
        api_key="k",
        breaker=CircuitBreaker(),
        clock=fake_clock,
        sleep=fake_clock.sleep,
    )
    in_progress = {"data": [{"song_id": "T1", "status": "PROCESSING"}]}
    provider._client = MagicMock()
    provider._client.request = AsyncMock(side_effect=[
        httpx.Response(200, json={"data": [{"song_id": "T1"}]}),
        httpx.Response(200, json=in_progress),
        httpx.Response(200, json=in_progress),
        httpx.Response(200, json={"data": [{"audio": "https://provider/x.mp3", "audio_duration": 180}]}),
    ])
    orch = GenerationOrchestrator(
        provider=provider,
        lyrics=lyrics,
        storage=storage,
        session_factory=session_factory,
        download_client=download_client,
    )

    view = await orch.create_job(LULLABY, requester_id="R1")

    assert view.state is JobState.COMPLETED
    assert view.provider_task_id == "T1"
    assert view.result_url == "https://provider/x.mp3"
    assert view.duration_seconds == 180
    assert view.migrated is False
    lyrics.draft_lyrics.assert_not_awaited()

    await orch.wait_for_background()

    async with session_factory() as session:
        migrated = await get_status(session, view.job_id)
    assert migrated.state is JobState.COMPLETED
    assert migrated.migrated is True
    assert migrated.result_url.startswith(f"https://cdn.example.com/{settings.storage_key_prefix}{view.job_id}_")
    download_client.get.assert_awaited_once()
    assert download_client.get.call_args.args[0] == "https://provider/x.mp3"


@pytest.mark.asyncio
async def test_create_job_returns_before_durable_storage_finishes(
    orchestrator, provider, storage, session_factory
) -> None:
    """A storage backend that never answers does not delay completion."""
    provider.wait_for_completion.return_value = ProviderResult(audio_url="https://provider/x.mp3")
    never = asyncio.Event()

    async def _hang(*args, **kwargs):
        await never.wait()

    storage.upload = AsyncMock(side_effect=_hang)

    view = await asyncio.wait_for(orchestrator.create_job(LULLABY, requester_id="R1"), timeout=5)

    assert view.state is JobState.COMPLETED
    assert view.result_url == "https://provider/x.mp3"
    assert orchestrator.background_task_count == 1
    job = await _job(session_factory, view.job_id)
    assert job.durable_storage_ref is None


@pytest.mark.asyncio
async def test_migration_failure_keeps_completed_transient_url(
    orchestrator, provider, storage, session_factory
) -> None:
    provider.wait_for_completion.return_value = ProviderResult(audio_url="https://provider/x.mp3")
    storage.exists.return_value = False

    view = await orchestrator.create_job(LULLABY, requester_id="R1")
    await orchestrator.wait_for_background()

    job = await _job(session_factory, view.job_id)
    assert job.state == JobState.COMPLETED.value
    assert job.result_url == "https://provider/x.mp3"
    assert job.durable_storage_ref is None


@pytest.mark.asyncio
async def test_submit_job_returns_pending_then_runs_in_background(
    orchestrator, provider, session_factory
) -> None:
    provider.wait_for_completion.return_value = ProviderResult(audio_url="https://provider/x.mp3")

    view = await orchestrator.submit_job(LULLABY, requester_id="R1")
    assert view.state is JobState.PENDING
    assert view.result_url is None

    await orchestrator.wait_for_background()
    job = await _job(session_factory, view.job_id)
    assert job.state == JobState.COMPLETED.value


# ---------------------------------------------------------------------------
# Lyric drafting (step A)
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_drafted_lyrics_are_submitted(orchestrator, provider, lyrics) -> None:
    provider.wait_for_completion.return_value = ProviderResult(audio_url="https://provider/x.mp3")

    view = await orchestrator.create_job({"promptText": "birthday song for mia"}, requester_id="R1")

    lyrics.draft_lyrics.assert_awaited_once_with("birthday song for mia", None)
    submission = provider.submit.call_args.args[0]
    assert submission.lyrics.startswith("[verse]")
    assert submission.is_auto is False
    assert view.lyrics.startswith("[verse]")


@pytest.mark.asyncio
async def test_lyric_draft_failure_falls_back_to_auto_lyrics(orchestrator, provider, lyrics) -> None:
    lyrics.draft_lyrics.side_effect = LyricsGenerationError("llm down")
    provider.wait_for_completion.return_value = ProviderResult(audio_url="https://provider/x.mp3")

    view = await orchestrator.create_job({"promptText": "birthday song"}, requester_id="R1")

    assert view.state is JobState.COMPLETED
    assert provider.submit.call_args.args[0].is_auto is True


@pytest.mark.asyncio
async def test_supplied_lyrics_skip_drafting(orchestrator, provider, lyrics) -> None:
    provider.wait_for_completion.return_value = ProviderResult(audio_url="https://provider/x.mp3")
    await orchestrator.create_job({"promptText": "song", "lyrics": "my own words"}, requester_id="R1")
    lyrics.draft_lyrics.assert_not_awaited()
    assert provider.submit.call_args.args[0].lyrics == "my own words"


# ---------------------------------------------------------------------------
# Timeout fallback
# ---------------------------------------------------------------------------

PLACEHOLDER_URL = "https://cdn.example.com/placeholder/lullaby.mp3"


@pytest.fixture
def placeholder_track(monkeypatch) -> str:
    monkeypatch.setattr(settings, "fallback_audio_url", PLACEHOLDER_URL)
    return PLACEHOLDER_URL


@pytest.mark.asyncio
async def test_timeout_fallback_completes_with_placeholder(
    orchestrator, provider, lyrics, storage, session_factory, placeholder_track
) -> None:
    provider.wait_for_completion.side_effect = ProviderTimeoutError("T1", 180)

    view = await orchestrator.create_job(LULLABY, requester_id="R1")
    await orchestrator.wait_for_background()

    assert view.state is JobState.COMPLETED
    assert view.fallback_used is True
    assert view.result_url == placeholder_track
    assert view.title == "gentle piano lullaby"
    assert view.description == "A soft piano lullaby that drifts to sleep."
    assert view.duration_seconds == 180
    storage.upload.assert_not_awaited()


@pytest.mark.asyncio
async def test_timeout_and_fallback_failure_marks_failed(
    orchestrator, provider, lyrics, placeholder_track
) -> None:
    provider.wait_for_completion.side_effect = ProviderTimeoutError("T1", 180)
    lyrics.describe_track.side_effect = LyricsGenerationError("llm down")

    view = await orchestrator.create_job(LULLABY, requester_id="R1")

    assert view.state is JobState.FAILED
    assert view.error_message == TIMEOUT_MESSAGE
    assert view.result_url is None


@pytest.mark.asyncio
async def test_timeout_without_text_provider_marks_failed(
    orchestrator, provider, lyrics, placeholder_track
) -> None:
    provider.wait_for_completion.side_effect = ProviderTimeoutError("T1", 180)
    lyrics.configured = False

    view = await orchestrator.create_job(LULLABY, requester_id="R1")

    assert view.state is JobState.FAILED
    assert view.error_message == TIMEOUT_MESSAGE


@pytest.mark.asyncio
async def test_timeout_without_placeholder_track_marks_failed(orchestrator, provider, lyrics, monkeypatch) -> None:
    monkeypatch.setattr(settings, "fallback_audio_url", None)
    provider.wait_for_completion.side_effect = ProviderTimeoutError("T1", 180)

    view = await orchestrator.create_job(LULLABY, requester_id="R1")

    assert view.state is JobState.FAILED
    assert view.error_message == TIMEOUT_MESSAGE
    lyrics.describe_track.assert_not_awaited()


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_terminal_submit_error_is_rejected(orchestrator, provider) -> None:
    provider.submit.side_effect = ProviderTerminalError("unauthorized", status_code=401)

    view = await orchestrator.create_job(LULLABY, requester_id="R1")

    assert view.state is JobState.FAILED
    assert view.error_message == REJECTED_MESSAGE
    assert view.provider_task_id is None
    provider.wait_for_completion.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [CircuitOpenError(120), ProviderTransientError("exhausted", status_code=503)],
)
async def test_retry_later_errors_fail_with_try_again_message(orchestrator, provider, error) -> None:
    provider.submit.side_effect = error
    view = await orchestrator.create_job(LULLABY, requester_id="R1")
    assert view.state is JobState.FAILED
    assert view.error_message == RETRY_LATER_MESSAGE


@pytest.mark.asyncio
async def test_provider_reported_failure_while_polling(orchestrator, provider) -> None:
    provider.wait_for_completion.side_effect = ProviderTerminalError(
        "FAILED", user_message="The music provider could not generate this song."
    )
    view = await orchestrator.create_job(LULLABY, requester_id="R1")
    assert view.state is JobState.FAILED
    assert view.provider_task_id == "T1"
    assert view.error_message == "The music provider could not generate this song."


@pytest.mark.asyncio
async def test_unexpected_error_marks_failed_and_propagates(orchestrator, provider, session_factory) -> None:
    provider.submit.side_effect = RuntimeError("bug")

    with pytest.raises(RuntimeError):
        await orchestrator.create_job(LULLABY, requester_id="R1")

    async with session_factory() as session:
        rows, _ = await repository.list_jobs(session, requester_id="R1")
    assert [job.state for job in rows] == [JobState.FAILED.value]


@pytest.mark.asyncio
async def test_invalid_request_creates_no_job(orchestrator, session_factory) -> None:
    with pytest.raises(ValidationError):
        await orchestrator.create_job({"promptText": "   "}, requester_id="R1")
    with pytest.raises(ValidationError):
        await orchestrator.create_job({"promptText": "x", "targetDurationSeconds": 5})
    assert await _count_jobs(session_factory) == 0


@pytest.mark.asyncio
async def test_prompt_empty_after_normalization_creates_no_job(
    orchestrator, provider, lyrics, session_factory
) -> None:
    with pytest.raises(ValidationError) as exc_info:
        await orchestrator.create_job({"promptText": "!!! ???"}, requester_id="R1")

    assert exc_info.value.http_status == 422
    assert await _count_jobs(session_factory) == 0
    lyrics.draft_lyrics.assert_not_awaited()
    provider.submit.assert_not_awaited()


# ---------------------------------------------------------------------------
# Deduplication and stale reclamation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_duplicate_pending_request_rejected(orchestrator, provider, session_factory) -> None:
    release = asyncio.Event()

    async def _slow_submit(submission):
        await release.wait()
        return "T1"

    provider.submit.side_effect = _slow_submit
    provider.wait_for_completion.return_value = ProviderResult(audio_url="https://provider/x.mp3")

    first = await orchestrator.submit_job(LULLABY, requester_id="R1")
    with pytest.raises(DuplicateInFlightError) as exc_info:
        await orchestrator.submit_job(LULLABY, requester_id="R1")
    assert exc_info.value.existing_job_id == first.job_id
    assert await _count_jobs(session_factory) == 1

    # Other requesters and anonymous jobs are unaffected.
    await orchestrator.submit_job(LULLABY, requester_id="R2")
    await orchestrator.submit_job(LULLABY)

    release.set()
    await orchestrator.wait_for_background()
    assert (await _job(session_factory, first.job_id)).state == JobState.COMPLETED.value


@pytest.mark.asyncio
async def test_concurrent_requests_from_one_requester_create_one_job(
    orchestrator, provider, session_factory
) -> None:
    release = asyncio.Event()

    async def _slow_submit(submission):
        await release.wait()
        return "T1"

    provider.submit.side_effect = _slow_submit
    provider.wait_for_completion.return_value = ProviderResult(audio_url="https://provider/x.mp3")

    results = await asyncio.gather(
        orchestrator.submit_job(LULLABY, requester_id="R1"),
        orchestrator.submit_job(LULLABY, requester_id="R1"),
        return_exceptions=True,
    )

    views = [r for r in results if not isinstance(r, BaseException)]
    errors = [r for r in results if isinstance(r, BaseException)]
    assert len(views) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], DuplicateInFlightError)
    assert errors[0].existing_job_id == views[0].job_id
    assert await _count_jobs(session_factory) == 1
    assert orchestrator._accept_locks == {}

    release.set()
    await orchestrator.wait_for_background()


@pytest.mark.asyncio
async def test_stale_pending_job_is_reclaimed_on_next_request(
    orchestrator, provider, session_factory
) -> None:
    async with session_factory() as session:
        stale = await repository.insert_job(
            session,
            GenerationJob(
                requester_id="R1",
                prompt_text="old request",
                created_at=utc_now() - timedelta(minutes=6),
            ),
        )
        stale_id = stale.id
        await session.commit()
    provider.wait_for_completion.return_value = ProviderResult(audio_url="https://provider/x.mp3")

    view = await orchestrator.create_job(LULLABY, requester_id="R1")

    assert view.state is JobState.COMPLETED
    old = await _job(session_factory, stale_id)
    assert old.state == JobState.FAILED.value
    assert old.error_message == STALE_JOB_MESSAGE


@pytest.mark.asyncio
async def test_recent_pending_job_is_not_reclaimed(orchestrator, session_factory) -> None:
    async with session_factory() as session:
        await repository.insert_job(
            session,
            GenerationJob(requester_id="R1", prompt_text="recent", created_at=utc_now() - timedelta(minutes=1)),
        )
        await session.commit()
    assert await orchestrator.reclaim_stale_jobs() == 0


@pytest.mark.asyncio
async def test_lost_race_stops_lifecycle_quietly(orchestrator, provider, session_factory) -> None:
    """If the sweep fails the job mid-submit, the lifecycle does not overwrite it."""
    async def _submit_then_lose(submission):
        async with session_factory() as session:
            rows, _ = await repository.list_jobs(session, requester_id="R1")
            await repository.update_state(
                session, rows[0].id, JobState.PENDING, {"state": JobState.FAILED, "error_message": "swept"}
            )
            await session.commit()
        return "T1"

    provider.submit.side_effect = _submit_then_lose

    view = await orchestrator.create_job(LULLABY, requester_id="R1")

    assert view.state is JobState.FAILED
    assert view.error_message == "swept"
    assert view.provider_task_id is None
    provider.wait_for_completion.assert_not_awaited()


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_delete_job_checks_ownership(orchestrator, provider, session_factory) -> None:
    provider.wait_for_completion.return_value = ProviderResult(audio_url="https://provider/x.mp3")
    view = await orchestrator.create_job(LULLABY, requester_id="R1")

    with pytest.raises(NotFoundError):
        await orchestrator.delete_job("missing", "R1")
    with pytest.raises(ForbiddenError):
        await orchestrator.delete_job(view.job_id, "R2")

    await orchestrator.delete_job(view.job_id, "R1")
    assert await _count_jobs(session_factory) == 0
