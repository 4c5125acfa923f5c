"""API layer for AlphaMail."""
