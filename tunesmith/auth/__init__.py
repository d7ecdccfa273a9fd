"""Requester identity for Tunesmith endpoints."""
from tunesmith.auth.dependencies import optional_device_id, require_device_id

__all__ = ["optional_device_id", "require_device_id"]
