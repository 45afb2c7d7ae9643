"""Core workflow logic: configuration, step execution, retries and the migration and deprovision state machines."""

__all__ = [
    "config",
    "context",
    "deprovision",
    "digest",
    "driver",
    "executor",
    "migration",
    "migration_logging",
    "phases",
    "resume",
    "retry",
]
