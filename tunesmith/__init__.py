"""Tunesmith: asynchronous music generation orchestration engine."""
