"""Health check endpoints."""
from __future__ import annotations

import asyncio
from typing import Required
from typing_extensions import TypedDict

from fastapi import APIRouter

from tunesmith.config import settings
from tunesmith.services.lyrics import get_lyrics_client
from tunesmith.services.provider import get_provider_client
from tunesmith.services.storage import get_durable_storage

router = APIRouter()


class HealthDependencyDict(TypedDict, total=False):
    """Status entry for one external dependency in the full health check.

    ``status`` is always present.  Additional keys depend on the dependency:
    ``provider`` for the text LLM, ``url`` for the music provider, ``bucket``
    for S3.
    """

    status: Required[str]
    provider: str   # LLM only
    url: str        # music provider only
    bucket: str     # S3 only


class FullHealthCheckDict(TypedDict):
    """Response shape for ``GET /health/full``."""

    status: str             # "ok" | "degraded"
    service: str
    version: str
    dependencies: dict[str, HealthDependencyDict]


@router.get("/health")
async def health_check() -> dict[str, str]:
    """Basic health check."""
    return {
        "status": "ok",
        "service": settings.app_name,
        "version": settings.app_version,
    }


@router.get("/health/full")
async def full_health_check() -> FullHealthCheckDict:
    """Full health check including dependencies.

    Reports:
    - music provider (reachable and configured)
    - LLM: configured (OpenRouter API key present)
    - S3 durable storage (if configured)
    """
    provider = get_provider_client()
    storage = get_durable_storage()

    provider_ok = provider.configured and await provider.health_check()
    llm_ok = get_lyrics_client().configured

    deps: dict[str, HealthDependencyDict] = {
        "provider": {
            "status": "ok" if provider_ok else "unavailable",
            "url": provider.base_url,
        },
        "llm": {
            "status": "ok" if llm_ok else "unconfigured",
            "provider": settings.llm_provider,
        },
    }
    if storage.configured:
        s3_ok = await asyncio.to_thread(storage.check_reachable)
        deps["s3_music"] = {
            "status": "ok" if s3_ok else "error",
            "bucket": storage.bucket or "",
        }

    return {
        "status": "ok" if provider_ok else "degraded",
        "service": settings.app_name,
        "version": settings.app_version,
        "dependencies": deps,
    }
