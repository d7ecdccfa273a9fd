"""Services for Tunesmith."""
