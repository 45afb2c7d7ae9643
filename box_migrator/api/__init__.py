"""Webhook-style HTTP surface over the single migration phases."""

__all__ = [
    "app",
    "schemas",
]
