"""
Text-generation client for lyric drafting and the provider-timeout fallback.

Talks to OpenRouter's OpenAI-compatible chat completions endpoint.  Both
operations are single best-effort calls: there is no retry here, callers
decide what a failure means (empty lyrics for drafting, a failed job for the
fallback).
"""
from __future__ import annotations

import logging
import time
from typing import Any, Optional

import httpx

from tunesmith.config import settings

logger = logging.getLogger(__name__)


class LyricsGenerationError(Exception):
    """The text-generation call failed or returned nothing usable."""


LYRICS_PROMPT_TEMPLATE = (
    "Write song lyrics in the same language as the topic below, in a {style} style. "
    "Keep them under 200 characters and include [verse] and [chorus] sections.\n\n"
    "Topic: {prompt}"
)

DESCRIPTION_PROMPT_TEMPLATE = (
    'Write a short, vivid description of a {style} song about "{prompt}".'
    "{lyrics_hint}"
)


class LyricsClient:
    """Minimal chat-completions client (OpenRouter)."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        self.api_key = api_key or settings.openrouter_api_key
        self.model = model or settings.llm_model
        self.base_url = (base_url or settings.llm_base_url).rstrip("/")
        self.timeout = timeout or settings.llm_timeout
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {
                "Authorization": f"Bearer {self.api_key}",
                "X-Title": settings.app_name,
            }
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=headers)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def complete(self, prompt: str, max_tokens: int) -> str:
        """Send one user message and return the assistant text."""
        if not self.configured:
            raise LyricsGenerationError("OpenRouter API key not configured")

        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": max_tokens,
            "stream": False,
        }
        start = time.time()
        try:
            response = await self.client.post(f"{self.base_url}/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise LyricsGenerationError(f"Text generation request failed: {exc}") from exc

        choices = data.get("choices") if isinstance(data, dict) else None
        content = ""
        if isinstance(choices, list) and choices:
            message = choices[0].get("message") if isinstance(choices[0], dict) else None
            if isinstance(message, dict) and isinstance(message.get("content"), str):
                content = message["content"].strip()
        logger.info(f"LLM: {time.time() - start:.2f}s, {len(content)} chars")
        if not content:
            raise LyricsGenerationError("Text generation returned an empty response")
        return content

    async def draft_lyrics(self, prompt_text: str, style_tag: str | None = None) -> str:
        """Step A: draft lyrics for a prompt."""
        prompt = LYRICS_PROMPT_TEMPLATE.format(style=style_tag or "lullaby", prompt=prompt_text)
        return await self.complete(prompt, settings.lyrics_max_tokens)

    async def describe_track(
        self,
        prompt_text: str,
        style_tag: str | None = None,
        lyrics: str | None = None,
    ) -> str:
        """Fallback: describe the song that would have been generated."""
        lyrics_hint = f" Lyrics: {lyrics}" if lyrics else ""
        prompt = DESCRIPTION_PROMPT_TEMPLATE.format(
            style=style_tag or "lullaby",
            prompt=prompt_text,
            lyrics_hint=lyrics_hint,
        )
        return await self.complete(prompt, settings.fallback_max_tokens)


_shared_client: LyricsClient | None = None


def get_lyrics_client() -> LyricsClient:
    """Return the process-wide LyricsClient singleton."""
    global _shared_client
    if _shared_client is None:
        _shared_client = LyricsClient()
    return _shared_client


async def close_lyrics_client() -> None:
    global _shared_client
    if _shared_client is not None:
        await _shared_client.close()
        _shared_client = None
