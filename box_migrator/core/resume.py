"""
Resume-point derivation for migration jobs.

A job has no status column. Where it stands is re-derived from which durable
records already exist: resolved identifiers mean bootstrap is done, the
per-item memo says which moves and collaboration updates are done, and a
cleanup record means cleanup is done. :func:`compute_resume_point` reads all
of it once, at job pickup.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum

from box_migrator.store.interface import JobStore
from box_migrator.types import (
    ItemOperation,
    MigrationJob,
    TransferItem,
    TransferPermission,
)


class MigrationPhase(IntEnum):
    """Last completed point of a migration job, in execution order."""

    NOT_BOOTSTRAPPED = 0
    BOOTSTRAPPED = 1
    ITEMS_MOVED = 2
    COLLABORATIONS_UPDATED = 3
    CLEANED_UP = 4
    FINISHED = 5


@dataclass
class ResumePoint:
    """Where a job resumes, plus the memo and work lists read to decide it."""

    phase: MigrationPhase
    items: list[TransferItem] = field(default_factory=list)
    permissions: list[TransferPermission] = field(default_factory=list)
    moved_ids: set[str] = field(default_factory=set)
    updated_ids: set[str] = field(default_factory=set)

    @property
    def pending_items(self) -> list[TransferItem]:
        return [i for i in self.items if i.record_id not in self.moved_ids]

    @property
    def pending_permissions(self) -> list[TransferPermission]:
        return [p for p in self.permissions if p.record_id not in self.updated_ids]


def compute_resume_point(job: MigrationJob, store: JobStore) -> ResumePoint:
    """Derive the resume point of ``job`` from the job store."""
    if job.is_finished:
        return ResumePoint(MigrationPhase.FINISHED)
    if job.skip_all:
        # Nothing but the finishing write is left to do
        return ResumePoint(MigrationPhase.CLEANED_UP)
    if not job.is_bootstrapped:
        return ResumePoint(
            MigrationPhase.NOT_BOOTSTRAPPED,
            items=store.list_transfer_items(job.job_id),
            permissions=store.list_transfer_permissions(job.job_id),
        )

    point = ResumePoint(
        MigrationPhase.BOOTSTRAPPED,
        items=store.list_transfer_items(job.job_id),
        permissions=store.list_transfer_permissions(job.job_id),
        moved_ids=store.fetch_processed_item_ids(job.job_id, ItemOperation.MOVE),
        updated_ids=store.fetch_processed_item_ids(
            job.job_id, ItemOperation.COLLABORATION_UPDATE
        ),
    )
    if point.pending_items:
        return point
    if point.pending_permissions:
        point.phase = MigrationPhase.ITEMS_MOVED
        return point
    if job.skip_cleanup or store.fetch_cleanup_result(job.job_id) is not None:
        point.phase = MigrationPhase.CLEANED_UP
    else:
        point.phase = MigrationPhase.COLLABORATIONS_UPDATED
    return point


def resume_state(job: MigrationJob, store: JobStore) -> MigrationPhase:
    """Phase a job has completed, as far as durable state shows."""
    return compute_resume_point(job, store).phase
