"""Core module for AlphaMail configuration and utilities."""
