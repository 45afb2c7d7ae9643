"""Service integrations for the Box API and notification delivery."""

__all__ = [
    "box_client",
    "items",
    "notifications",
]
