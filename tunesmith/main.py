"""
Tunesmith API

FastAPI application for asynchronous AI music generation.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator
from typing import Awaitable, Callable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from tunesmith.config import settings
from tunesmith.api.routes import health, music
from tunesmith.db import init_db, close_db
from tunesmith.services.lyrics import close_lyrics_client
from tunesmith.services.orchestrator import shutdown_orchestrator
from tunesmith.services.provider import get_provider_client, close_provider_client


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler."""
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    logger.info(f"Music provider: {settings.provider_base_url} (model {settings.provider_model_version})")
    logger.info(f"LLM provider: {settings.llm_provider} ({settings.llm_model})")

    try:
        await init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    # Warm up the provider connection pool so the first generation request
    # does not pay the TCP/TLS handshake.
    await get_provider_client().warmup()

    yield

    logger.info("Shutting down...")
    await shutdown_orchestrator()
    await close_db()
    await close_provider_client()
    await close_lyrics_client()


app = FastAPI(
    title="Tunesmith API",
    version=settings.app_version,
    description=(
        "Asynchronous AI music generation.\n\n"
        "Start a job with `POST /api/v1/music/jobs`, then poll "
        "`GET /api/v1/music/jobs/{jobId}` until it is `completed` or `failed`. "
        "Requesters are identified by the `X-Device-ID` header."
    ),
    lifespan=lifespan,
    openapi_url="/api/v1/openapi.json",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)


# Adapter: FastAPI expects (Request, Exception) but slowapi's handler
# takes (Request, RateLimitExceeded).
def _handle_rate_limit(request: Request, exc: Exception) -> Response:
    if isinstance(exc, RateLimitExceeded):
        return _rate_limit_exceeded_handler(request, exc)
    raise exc


app.state.limiter = music.limiter
app.add_exception_handler(RateLimitExceeded, _handle_rate_limit)

# Security headers middleware (added first, runs last)
app.add_middleware(SecurityHeadersMiddleware)

if "*" in settings.cors_origins:
    logger.warning(
        "SECURITY WARNING: CORS allows all origins. "
        "Set TUNESMITH_CORS_ORIGINS to specific domains in production."
    )
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, prefix="/api/v1", tags=["health"])
app.include_router(music.router, prefix="/api/v1", tags=["music"])


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with service info."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }


def run() -> None:
    """Console entry point: ``tunesmith`` serves the API with uvicorn."""
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
