"""
Job store interface.

The job store is the only durable state the workflows have. It is shaped like
a set of stored procedures: each method takes or returns one of the records
from :mod:`box_migrator.types` and does one thing. Two table groups live
behind it: the job tracker (which transfers completed, and what they moved)
and the workflow state (what the workflows already did about them).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from box_migrator.types import (
    BootstrapResult,
    CleanupResult,
    DeprovisionRecord,
    ItemOperation,
    ItemResult,
    MigrationJob,
    TransferItem,
    TransferPermission,
)


def _now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


class JobStore(ABC):
    """Durable log of jobs and of every phase and item outcome."""

    # -- Job tracker ----------------------------------------------------------

    @abstractmethod
    def seed_jobs(self) -> int:
        """Create a migration job for every newly completed transfer.

        Returns:
            Number of jobs created; zero when there was nothing new
        """

    @abstractmethod
    def dequeue_next_job(self) -> Optional[MigrationJob]:
        """Claim the next unfinished job, or return None when there is none.

        A claimed job is invisible to other callers until its lease expires,
        :meth:`release_job` is called, or it is marked finished.
        """

    @abstractmethod
    def release_job(self, job_id: int, retry_after_seconds: float = 0) -> None:
        """Drop the claim on a job.

        With ``retry_after_seconds`` the job stays hidden from
        :meth:`dequeue_next_job` for that long; jobs queued behind it are
        dequeued in the meantime.
        """

    @abstractmethod
    def fetch_job(self, job_id: int) -> Optional[MigrationJob]:
        """Return the current state of a job."""

    @abstractmethod
    def list_transfer_items(self, job_id: int) -> list[TransferItem]:
        """Top-level items the bulk transfer moved for the job."""

    @abstractmethod
    def list_transfer_permissions(self, job_id: int) -> list[TransferPermission]:
        """Shared items whose collaborators must be downgraded."""

    # -- Workflow state -------------------------------------------------------

    @abstractmethod
    def insert_bootstrap_result(self, result: BootstrapResult) -> None:
        """Record the resolved identifiers and set both on the job at once."""

    @abstractmethod
    def insert_item_result(self, result: ItemResult) -> None:
        """Record the outcome of one move or collaboration update."""

    @abstractmethod
    def fetch_processed_item_ids(
        self, job_id: int, operation: ItemOperation
    ) -> set[str]:
        """Record ids already succeeded or permanently skipped for ``operation``."""

    @abstractmethod
    def insert_cleanup_result(self, result: CleanupResult) -> None:
        """Record the outcome of the cleanup phase."""

    @abstractmethod
    def fetch_cleanup_result(self, job_id: int) -> Optional[CleanupResult]:
        """Return the recorded cleanup outcome, if cleanup already ran."""

    @abstractmethod
    def mark_job_finished(self, job_id: int) -> None:
        """Set the completion timestamp; the job is never dequeued again."""

    @abstractmethod
    def insert_deprovision_record(self, record: DeprovisionRecord) -> None:
        """Record a completed deprovision phase for an account."""

    @abstractmethod
    def fetch_deprovision_phase(self, user_id: str) -> int:
        """Highest completed deprovision phase for an account, 0 when none."""

    def close(self) -> None:
        """Release any underlying resources."""
