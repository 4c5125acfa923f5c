"""Input sanitization helpers."""
