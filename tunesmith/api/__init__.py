"""HTTP API for Tunesmith."""
