"""
FastAPI identity dependencies.

Requesters are identified by the ``X-Device-ID`` header (a UUID); there is
no token-based auth in front of the music endpoints.
"""
from __future__ import annotations

import logging
import uuid

from fastapi import Header, HTTPException, status

logger = logging.getLogger(__name__)


def _validated(value: str) -> str:
    try:
        uuid.UUID(value)
    except ValueError:
        logger.warning("Invalid X-Device-ID format: %s", value[:32])
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-Device-ID format",
        )
    return value


async def require_device_id(
    x_device_id: str | None = Header(None, alias="X-Device-ID"),
) -> str:
    """
    Require a valid X-Device-ID header (UUID).

    Used where ownership matters (deleting a job).

    Raises:
        HTTPException 400: If X-Device-ID is missing, empty, or not a valid UUID.
    """
    if not x_device_id or not x_device_id.strip():
        logger.warning("Music request without X-Device-ID")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Device-ID header required",
        )
    return _validated(x_device_id.strip())


async def optional_device_id(
    x_device_id: str | None = Header(None, alias="X-Device-ID"),
) -> str | None:
    """X-Device-ID when present (validated), else None for anonymous jobs."""
    if not x_device_id or not x_device_id.strip():
        return None
    return _validated(x_device_id.strip())
