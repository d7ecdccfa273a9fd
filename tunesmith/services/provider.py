"""Music Provider Client.

Client for the external AI music-synthesis provider (TopMediai-compatible
``/v2/submit`` + ``/v2/query`` protocol).

The provider's response shapes are not stable, so both the task-id lookup
after submission and the interpretation of each poll response are modelled
as ordered tuples of small extractor functions.  Each extractor handles one
known shape and returns ``None`` when the payload is not that shape; the first
non-``None`` answer wins.  This keeps every response variant testable on its
own.
"""
from __future__ import annotations

import asyncio
import logging
import re
import time as _time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx

from tunesmith.config import DEFAULT_DURATION_SECONDS, settings
from tunesmith.services.errors import (
    TERMINAL_STATUS_CODES,
    MusicEngineError,
    ProviderTerminalError,
    ProviderTimeoutError,
    ProviderTransientError,
    ValidationError,
)
from tunesmith.services.resilience import (
    CircuitBreaker,
    RetryPolicy,
    execute,
    get_circuit_breaker,
    query_policy,
    submit_policy,
)

logger = logging.getLogger(__name__)

_FAILED_STATUSES = frozenset({"FAILED", "ERROR"})

# Adaptive polling: fast at first, slower once the task is clearly long-running.
_FAST_POLL_ATTEMPTS = 3
_MEDIUM_POLL_ATTEMPTS = 10
_FAST_POLL_INTERVAL = 2.0
_MEDIUM_POLL_INTERVAL = 3.0
_SLOW_POLL_INTERVAL = 5.0

_DISALLOWED_CHARS = re.compile(r"[^\w\s]", re.UNICODE)
_WHITESPACE = re.compile(r"\s+")


def poll_interval(attempt: int) -> float:
    """Seconds to wait after poll ``attempt`` (1-based)."""
    if attempt <= _FAST_POLL_ATTEMPTS:
        return _FAST_POLL_INTERVAL
    if attempt <= _MEDIUM_POLL_ATTEMPTS:
        return _MEDIUM_POLL_INTERVAL
    return _SLOW_POLL_INTERVAL


def _drop_repeated_tokens(words: list[str]) -> list[str]:
    out: list[str] = []
    for word in words:
        if out and out[-1].lower() == word.lower():
            continue
        out.append(word)
    return out


def normalize_prompt(
    prompt: str,
    max_chars: int | None = None,
    max_words: int | None = None,
) -> str:
    """Shrink a free-form prompt into something the provider handles quickly.

    Strips characters outside word characters and whitespace (``\\w`` is
    Unicode-aware so Hangul and accented letters survive), collapses
    whitespace, drops repeated adjacent tokens, and truncates to the ceiling:
    first ``max_words`` words, then ``max_chars`` characters.
    """
    max_chars = max_chars or settings.prompt_max_chars
    max_words = max_words or settings.prompt_max_words

    cleaned = _DISALLOWED_CHARS.sub(" ", prompt or "")
    words = _drop_repeated_tokens(_WHITESPACE.sub(" ", cleaned).strip().split(" "))
    normalized = " ".join(w for w in words if w)
    if len(normalized) > max_chars:
        normalized = " ".join(normalized.split(" ")[:max_words])
    return normalized[:max_chars].strip()


@dataclass
class ProviderSubmission:
    """Normalized payload for ``POST /v2/submit``."""

    prompt: str
    lyrics: str
    title: str
    instrumental: bool
    gender: str = "auto"
    model_version: str = field(default_factory=lambda: settings.provider_model_version)

    @property
    def is_auto(self) -> bool:
        """Empty lyrics ask the provider to write its own."""
        return not self.lyrics

    def to_payload(self) -> dict[str, Any]:
        return {
            "is_auto": 1 if self.is_auto else 0,
            "prompt": self.prompt,
            "lyrics": self.lyrics,
            "title": self.title,
            "instrumental": 1 if self.instrumental else 0,
            "model_version": self.model_version,
            "gender": self.gender,
        }


def build_submission(
    *,
    prompt_text: str,
    lyrics: str,
    title: str,
    instrumental: bool,
    voice_gender: str,
) -> ProviderSubmission:
    """Apply normalization and character ceilings to a submission."""
    prompt = normalize_prompt(prompt_text)
    if not prompt:
        raise ValidationError("Prompt is empty after normalization")
    title = (title or "").strip()[: settings.title_max_chars]
    if not title:
        raise ValidationError("Title is empty")
    gender = voice_gender.lower() if voice_gender else "auto"
    if gender not in ("male", "female"):
        gender = "auto"
    return ProviderSubmission(
        prompt=prompt,
        lyrics=(lyrics or "")[: settings.lyrics_max_chars],
        title=title,
        instrumental=instrumental,
        gender=gender,
    )


@dataclass
class ProviderResult:
    """Success outcome of a generation task."""

    audio_url: str
    duration_seconds: int | None = None
    lyrics: str | None = None
    title: str | None = None
    description: str | None = None
    fallback_used: bool = False


# ---------------------------------------------------------------------------
# Task-id extractors (submit response)
# ---------------------------------------------------------------------------

def _task_id_from_result_list(body: dict[str, Any]) -> str | None:
    data = body.get("data")
    if isinstance(data, list) and data and isinstance(data[0], dict):
        first = data[0]
        value = first.get("song_id") or first.get("task_id") or first.get("id")
        return str(value) if value else None
    return None


def _task_id_from_flat_object(body: dict[str, Any]) -> str | None:
    for source in (body, body.get("data")):
        if isinstance(source, dict):
            value = source.get("song_id") or source.get("task_id")
            if value:
                return str(value)
    return None


def _task_id_from_bare_id(body: dict[str, Any]) -> str | None:
    value = body.get("id")
    return str(value) if value else None


TASK_ID_EXTRACTORS: tuple[Callable[[dict[str, Any]], str | None], ...] = (
    _task_id_from_result_list,
    _task_id_from_flat_object,
    _task_id_from_bare_id,
)


def extract_task_id(body: object) -> str | None:
    if not isinstance(body, dict):
        return None
    for extractor in TASK_ID_EXTRACTORS:
        task_id = extractor(body)
        if task_id:
            return task_id
    return None


# ---------------------------------------------------------------------------
# Poll interpreters (query response)
# ---------------------------------------------------------------------------

def _as_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value))
        except ValueError:
            return None
    return None


def _result_from_item(item: dict[str, Any]) -> ProviderResult | None:
    audio = item.get("audio") or item.get("audio_url")
    if not isinstance(audio, str) or not audio:
        return None
    lyrics = item.get("lyric") or item.get("lyrics") or item.get("text")
    title = item.get("title") or item.get("name")
    return ProviderResult(
        audio_url=audio,
        duration_seconds=_as_int(item.get("audio_duration") or item.get("duration")),
        lyrics=lyrics if isinstance(lyrics, str) else None,
        title=title if isinstance(title, str) else None,
    )


def _audio_from_result_list(body: dict[str, Any]) -> ProviderResult | None:
    data = body.get("data")
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return _result_from_item(data[0])
    return None


def _audio_from_direct_field(body: dict[str, Any]) -> ProviderResult | None:
    direct = _result_from_item(body)
    if direct is not None:
        return direct
    data = body.get("data")
    if isinstance(data, dict):
        return _result_from_item(data)
    return None


def _metadata_from_body(body: object) -> dict[str, Any]:
    """Lyrics, title and duration from a query response that may lack audio."""
    if not isinstance(body, dict):
        return {}
    data = body.get("data")
    item = data[0] if isinstance(data, list) and data else data
    if not isinstance(item, dict):
        return {}
    lyrics = item.get("lyric") or item.get("lyrics") or item.get("text")
    title = item.get("title") or item.get("name")
    return {
        "lyrics": lyrics if isinstance(lyrics, str) and lyrics else None,
        "title": title if isinstance(title, str) and title else None,
        "duration_seconds": _as_int(item.get("audio_duration") or item.get("duration")),
    }


POLL_EXTRACTORS: tuple[Callable[[dict[str, Any]], ProviderResult | None], ...] = (
    _audio_from_result_list,
    _audio_from_direct_field,
)


def reported_failure(body: dict[str, Any]) -> str | None:
    """Return the provider's failure status, if it reports one."""
    candidates: list[object] = [body.get("status")]
    data = body.get("data")
    if isinstance(data, list) and data and isinstance(data[0], dict):
        candidates.append(data[0].get("status"))
    elif isinstance(data, dict):
        candidates.append(data.get("status"))
    for status in candidates:
        if isinstance(status, str) and status.upper() in _FAILED_STATUSES:
            return status.upper()
    return None


def is_empty_payload(body: object) -> bool:
    """True for the ambiguous "nothing to report" responses the provider sends."""
    if not isinstance(body, dict) or not body:
        return True
    data = body.get("data")
    return data is None or (isinstance(data, (dict, list)) and len(data) == 0)


def _now() -> float:
    return _time.monotonic()


# Connection pool settings: the provider is hit every few seconds per job while
# polling, so keep-alive connections are reused across all jobs in the process.
def _connection_limits() -> httpx.Limits:
    return httpx.Limits(
        max_connections=settings.provider_max_connections,
        max_keepalive_connections=settings.provider_max_keepalive,
        keepalive_expiry=settings.provider_keepalive_expiry,
    )


class ProviderClient:
    """
    Async client for the music provider.

    Uses a long-lived httpx.AsyncClient with keepalive connection pooling so
    the TCP/TLS handshake cost is paid once per process rather than on every
    poll.  Every request goes through the shared circuit breaker and the
    retry executor in ``tunesmith.services.resilience``.
    """

    def __init__(
        self,
        base_url: str | None = None,
        audio_base_url: str | None = None,
        api_key: str | None = None,
        breaker: CircuitBreaker | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        self.base_url = (base_url or settings.provider_base_url).rstrip("/")
        self.audio_base_url = (audio_base_url or settings.provider_audio_base_url).rstrip("/")
        self.api_key = api_key or settings.provider_api_key
        self.poll_deadline = settings.provider_poll_deadline_seconds
        self._breaker = breaker
        self.clock = clock or _now
        self._sleep = sleep or asyncio.sleep
        self._client: httpx.AsyncClient | None = None

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker if self._breaker is not None else get_circuit_breaker()

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["x-api-key"] = self.api_key
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    connect=5.0,
                    read=settings.provider_submit_timeout,
                    write=30.0,
                    pool=5.0,
                ),
                limits=_connection_limits(),
                headers=headers,
            )
        return self._client

    async def warmup(self) -> None:
        """Pre-establish the keep-alive connection during application startup."""
        if not self.configured:
            logger.warning("Provider warmup skipped: TUNESMITH_PROVIDER_API_KEY not set")
            return
        if await self.health_check():
            logger.info("Provider connection warmed up ✓")
        else:
            logger.warning(
                "Provider warmup: health check failed — "
                "generation requests will retry automatically"
            )

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def health_check(self) -> bool:
        """Check if the provider is reachable, using a short probe timeout."""
        probe_timeout = httpx.Timeout(connect=3.0, read=5.0, write=3.0, pool=3.0)
        try:
            response = await self.client.get(f"{self.base_url}/v1/health", timeout=probe_timeout)
            return response.status_code < 400
        except httpx.HTTPError as e:
            logger.warning(f"Provider health check failed: {e}")
            return False

    @staticmethod
    def _raise_for_status(response: httpx.Response, label: str) -> None:
        code = response.status_code
        if code < 400:
            return
        body = response.text[:200]
        if code in TERMINAL_STATUS_CODES:
            raise ProviderTerminalError(f"{label} rejected ({code}): {body}", status_code=code)
        raise ProviderTransientError(f"{label} failed ({code}): {body}", status_code=code)

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        label: str,
        timeout: float,
        **kwargs: Any,
    ) -> object:
        try:
            response = await self.client.request(method, url, timeout=timeout, **kwargs)
        except httpx.TransportError as exc:
            raise ProviderTransientError(f"{label} transport error: {exc}") from exc
        self._raise_for_status(response, label)
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderTransientError(f"{label} returned non-JSON body") from exc

    # ── Step B: submission ──────────────────────────────────────────────

    async def submit(
        self,
        submission: ProviderSubmission,
        policy: RetryPolicy | None = None,
    ) -> str:
        """Submit a generation task and return the provider's task id."""
        if not self.configured:
            raise ProviderTerminalError("Music provider API key is not configured")

        payload = submission.to_payload()

        async def _attempt() -> str:
            body = await self._request_json(
                "POST",
                f"{self.base_url}/v2/submit",
                label="Provider submit",
                timeout=settings.provider_submit_timeout,
                json=payload,
            )
            task_id = extract_task_id(body)
            if not task_id:
                raise ProviderTransientError(
                    f"No task id in provider submit response: {str(body)[:200]}"
                )
            return task_id

        task_id = await execute(
            _attempt,
            policy or submit_policy(),
            breaker=self.breaker,
            sleep=self._sleep,
            label="Provider submit",
        )
        logger.info(
            f"📥 Provider task {task_id} submitted "
            f"(prompt {len(submission.prompt)} chars, auto_lyrics={submission.is_auto})"
        )
        return task_id

    # ── Step C: polling ─────────────────────────────────────────────────

    async def query(self, task_id: str, policy: RetryPolicy | None = None) -> object:
        """One status query for ``task_id`` (retried per the query policy)."""
        return await execute(
            lambda: self._request_json(
                "GET",
                f"{self.base_url}/v2/query",
                label="Provider query",
                timeout=settings.provider_query_timeout,
                params={"id": task_id},
            ),
            policy or query_policy(),
            breaker=self.breaker,
            sleep=self._sleep,
            label="Provider query",
        )

    async def probe_audio_redirect(self, task_id: str) -> ProviderResult | None:
        """HEAD the deterministic audio endpoint; a redirect means the audio is ready."""
        url = f"{self.audio_base_url}/api/audio/{task_id}"
        try:
            response = await self.client.head(
                url,
                follow_redirects=False,
                timeout=settings.provider_query_timeout,
            )
        except httpx.HTTPError as exc:
            logger.debug(f"Audio redirect probe failed for {task_id}: {exc}")
            return None
        location = response.headers.get("location")
        if 300 <= response.status_code < 400 and location:
            logger.info(f"✅ Provider task {task_id} ready (audio redirect detected)")
            return await self._with_task_metadata(task_id, ProviderResult(audio_url=location))
        return None

    async def _with_task_metadata(self, task_id: str, result: ProviderResult) -> ProviderResult:
        """Best-effort single re-query for lyrics and title after a redirect hit."""
        try:
            body = await self.query(task_id, RetryPolicy(max_retries=0))
        except MusicEngineError as exc:
            logger.debug(f"Metadata re-query failed for {task_id}: {exc}")
            return result
        meta = _metadata_from_body(body)
        result.lyrics = meta.get("lyrics")
        result.title = meta.get("title")
        result.duration_seconds = meta.get("duration_seconds")
        return result

    async def interpret(self, task_id: str, body: object) -> ProviderResult | None:
        """Turn one poll response into a result, ``None`` (not ready), or an error."""
        if isinstance(body, dict):
            for extractor in POLL_EXTRACTORS:
                result = extractor(body)
                if result is not None:
                    return result
            failure = reported_failure(body)
            if failure:
                raise ProviderTerminalError(
                    f"Provider reported {failure} for task {task_id}",
                    user_message="The music provider could not generate this song.",
                )
        if is_empty_payload(body):
            return await self.probe_audio_redirect(task_id)
        return None

    async def wait_for_completion(
        self,
        task_id: str,
        started_at: float | None = None,
    ) -> ProviderResult:
        """Poll until an audio reference appears or the deadline passes.

        ``started_at`` is the ``clock()`` reading taken just before submission;
        the deadline is measured from it, not from the first poll.  The
        deadline is checked before each poll and never interrupts a poll that
        is already in flight.
        """
        start = started_at if started_at is not None else self.clock()
        deadline = start + self.poll_deadline
        attempt = 0

        while self.clock() < deadline:
            attempt += 1
            try:
                body = await self.query(task_id)
            except ProviderTransientError as exc:
                if exc.status_code != 429:
                    raise
                logger.warning(f"⏳ Provider rate limited while polling {task_id} (poll {attempt})")
            else:
                result = await self.interpret(task_id, body)
                if result is not None:
                    elapsed = self.clock() - start
                    logger.info(
                        f"✅ Provider task {task_id} complete in {elapsed:.1f}s (poll {attempt})"
                    )
                    return result
                logger.debug(f"[Provider] Task {task_id} not ready (poll {attempt})")

            remaining = deadline - self.clock()
            if remaining <= 0:
                break
            await self._sleep(min(poll_interval(attempt), remaining))

        logger.error(f"❌ Provider task {task_id} did not complete within {self.poll_deadline:.0f}s")
        raise ProviderTimeoutError(task_id, self.poll_deadline)


def result_duration(result: ProviderResult, fallback: int | None) -> int:
    return result.duration_seconds or fallback or DEFAULT_DURATION_SECONDS


# ---------------------------------------------------------------------------
# Module-level singleton, shared across all jobs so the connection pool is
# reused rather than recreated per request.
# ---------------------------------------------------------------------------

_shared_client: ProviderClient | None = None


def get_provider_client() -> ProviderClient:
    """Return the process-wide ProviderClient singleton."""
    global _shared_client
    if _shared_client is None:
        _shared_client = ProviderClient()
    return _shared_client


async def close_provider_client() -> None:
    """Close the singleton client (call from FastAPI lifespan shutdown)."""
    global _shared_client
    if _shared_client is not None:
        await _shared_client.close()
        _shared_client = None
