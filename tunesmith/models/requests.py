"""Request models for the Tunesmith API."""
from __future__ import annotations

from pydantic import Field, field_validator

from tunesmith.config import DEFAULT_DURATION_SECONDS
from tunesmith.db.models import VoiceGender
from tunesmith.models.base import CamelModel

_MAX_PROMPT_CHARS = 1000
_MAX_LYRICS_CHARS = 1000

DEFAULT_TITLE = "New Song"


class GenerationRequest(CamelModel):
    """Request to generate one song."""

    prompt_text: str = Field(
        ...,
        min_length=1,
        max_length=_MAX_PROMPT_CHARS,
        description="Free-form description of the song to generate",
        examples=["gentle piano lullaby"],
    )
    style_tag: str | None = Field(default=None, max_length=64, examples=["lullaby"])
    title: str | None = Field(default=None, max_length=255)
    lyrics: str | None = Field(
        default=None,
        max_length=_MAX_LYRICS_CHARS,
        description="Caller-supplied lyrics; skips lyric drafting when present",
    )
    wants_instrumental: bool = False
    wants_generated_lyrics: bool = True
    voice_gender: VoiceGender = VoiceGender.AUTO
    target_duration_seconds: int = Field(default=DEFAULT_DURATION_SECONDS, ge=30, le=480)

    @field_validator("prompt_text")
    @classmethod
    def _prompt_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("promptText must not be blank")
        return v

    @field_validator("style_tag", "title", "lyrics")
    @classmethod
    def _blank_to_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @property
    def needs_lyric_draft(self) -> bool:
        """Lyrics are drafted only when asked for, not supplied, and not instrumental."""
        return self.wants_generated_lyrics and not self.lyrics and not self.wants_instrumental

    @property
    def effective_title(self) -> str:
        return self.title or self.style_tag or DEFAULT_TITLE
