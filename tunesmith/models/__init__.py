"""Pydantic models for the Tunesmith API."""
from tunesmith.models.requests import GenerationRequest
from tunesmith.models.responses import (
    DurationOption,
    EngineStatusView,
    JobListView,
    JobView,
)

__all__ = [
    "GenerationRequest",
    "JobView",
    "JobListView",
    "EngineStatusView",
    "DurationOption",
]
