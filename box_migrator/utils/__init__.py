"""Shared utilities for logging."""

__all__ = [
    "logging",
]
