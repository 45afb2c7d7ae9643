"""Durable job and workflow-state storage."""

from box_migrator.store.interface import JobStore
from box_migrator.store.memory import InMemoryJobStore
from box_migrator.store.sqlite import SqliteJobStore

__all__ = [
    "InMemoryJobStore",
    "JobStore",
    "SqliteJobStore",
]
