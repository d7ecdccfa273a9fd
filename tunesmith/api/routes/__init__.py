"""API route modules."""
from __future__ import annotations

from tunesmith.api.routes import health, music

__all__ = ["health", "music"]
