"""Tests for tunesmith.services.lyrics.LyricsClient (mocked HTTP)."""
from __future__ import annotations

from typing import Any

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

from tunesmith.services.lyrics import LyricsClient, LyricsGenerationError

BASE = "https://llm.test/api/v1"


def _resp(body: Any, status: int = 200) -> httpx.Response:
    return httpx.Response(status, json=body, request=httpx.Request("POST", f"{BASE}/chat/completions"))


def _chat(content: str) -> dict[str, Any]:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


@pytest.fixture
def client() -> LyricsClient:
    c = LyricsClient(api_key="or-key", model="openai/gpt-4o", base_url=BASE)
    c._client = MagicMock()
    c._client.post = AsyncMock()
    return c


@pytest.mark.asyncio
async def test_draft_lyrics_returns_assistant_text(client: LyricsClient) -> None:
    client._client.post.return_value = _resp(_chat("  [verse]\nhush now  "))
    lyrics = await client.draft_lyrics("lullaby for a baby", "lullaby")

    assert lyrics == "[verse]\nhush now"
    url = client._client.post.call_args.args[0]
    payload = client._client.post.call_args.kwargs["json"]
    assert url == f"{BASE}/chat/completions"
    assert payload["model"] == "openai/gpt-4o"
    assert "lullaby for a baby" in payload["messages"][0]["content"]


@pytest.mark.asyncio
async def test_describe_track_includes_lyrics_hint(client: LyricsClient) -> None:
    client._client.post.return_value = _resp(_chat("A dreamy piano piece."))
    text = await client.describe_track("piano lullaby", None, "hush now")
    assert text == "A dreamy piano piece."
    assert "hush now" in client._client.post.call_args.kwargs["json"]["messages"][0]["content"]


@pytest.mark.asyncio
async def test_http_error_becomes_generation_error(client: LyricsClient) -> None:
    client._client.post.return_value = _resp({"error": "nope"}, status=500)
    with pytest.raises(LyricsGenerationError):
        await client.draft_lyrics("x")


@pytest.mark.asyncio
async def test_transport_error_becomes_generation_error(client: LyricsClient) -> None:
    client._client.post.side_effect = httpx.ReadTimeout("slow")
    with pytest.raises(LyricsGenerationError):
        await client.draft_lyrics("x")


@pytest.mark.asyncio
async def test_empty_content_is_an_error(client: LyricsClient) -> None:
    client._client.post.return_value = _resp({"choices": []})
    with pytest.raises(LyricsGenerationError):
        await client.draft_lyrics("x")


@pytest.mark.asyncio
async def test_unconfigured_client_never_calls_out(client: LyricsClient) -> None:
    client.api_key = None
    with pytest.raises(LyricsGenerationError):
        await client.describe_track("x")
    client._client.post.assert_not_awaited()
