"""
In-memory job store.

Useful for tests, ad-hoc single-account runs and development. Everything is
lost when the process exits.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict
from dataclasses import replace
from typing import Optional

from box_migrator.store.interface import JobStore, _now_iso
from box_migrator.types import (
    BootstrapResult,
    CleanupResult,
    DeprovisionRecord,
    ItemOperation,
    ItemResult,
    ItemStatus,
    MigrationJob,
    TransferItem,
    TransferPermission,
)


class InMemoryJobStore(JobStore):
    """Job store kept in dictionaries, guarded by one lock.

    Completed transfers are registered with :meth:`add_job` (together with
    their items and permissions) and become jobs on :meth:`seed_jobs`.
    Dequeued jobs stay claimed until released or finished; there is no lease
    expiry. A job released with a retry delay is skipped until the delay has
    passed.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._pending: dict[int, MigrationJob] = {}
        self._jobs: dict[int, MigrationJob] = {}
        self._claimed: set[int] = set()
        self._retry_at: dict[int, float] = {}
        self._items: dict[int, list[TransferItem]] = defaultdict(list)
        self._permissions: dict[int, list[TransferPermission]] = defaultdict(list)
        self.bootstrap_results: list[BootstrapResult] = []
        self.item_results: list[ItemResult] = []
        self.cleanup_results: list[CleanupResult] = []
        self.deprovision_records: list[DeprovisionRecord] = []

    def add_job(
        self,
        job: MigrationJob,
        items: Optional[list[TransferItem]] = None,
        permissions: Optional[list[TransferPermission]] = None,
        seeded: bool = True,
    ) -> MigrationJob:
        """Register a completed transfer; with ``seeded`` it is a job right away."""
        with self._lock:
            self._items[job.job_id] = list(items or [])
            self._permissions[job.job_id] = list(permissions or [])
            if seeded:
                self._jobs[job.job_id] = job
            else:
                self._pending[job.job_id] = job
        return job

    def seed_jobs(self) -> int:
        with self._lock:
            created = 0
            for job_id in sorted(self._pending):
                if job_id not in self._jobs:
                    self._jobs[job_id] = self._pending[job_id]
                    created += 1
            self._pending.clear()
            return created

    def dequeue_next_job(self) -> Optional[MigrationJob]:
        with self._lock:
            for job_id in sorted(self._jobs):
                job = self._jobs[job_id]
                if job.completed_at is not None or job_id in self._claimed:
                    continue
                if self._retry_at.get(job_id, 0) <= time.time():
                    self._retry_at.pop(job_id, None)
                    self._claimed.add(job_id)
                    return replace(job)
            return None

    def release_job(self, job_id: int, retry_after_seconds: float = 0) -> None:
        with self._lock:
            self._claimed.discard(job_id)
            if retry_after_seconds > 0:
                self._retry_at[job_id] = time.time() + retry_after_seconds
            else:
                self._retry_at.pop(job_id, None)

    def fetch_job(self, job_id: int) -> Optional[MigrationJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job is not None else None

    def list_transfer_items(self, job_id: int) -> list[TransferItem]:
        with self._lock:
            return list(self._items.get(job_id, []))

    def list_transfer_permissions(self, job_id: int) -> list[TransferPermission]:
        with self._lock:
            return list(self._permissions.get(job_id, []))

    def insert_bootstrap_result(self, result: BootstrapResult) -> None:
        with self._lock:
            self.bootstrap_results.append(result)
            job = self._jobs[result.job_id]
            self._jobs[result.job_id] = replace(
                job, user_id=result.user_id, managed_folder_id=result.managed_folder_id
            )

    def insert_item_result(self, result: ItemResult) -> None:
        with self._lock:
            self.item_results.append(result)

    def fetch_processed_item_ids(self, job_id: int, operation: ItemOperation) -> set[str]:
        done = (ItemStatus.SUCCEEDED, ItemStatus.SKIPPED)
        with self._lock:
            return {
                r.record_id
                for r in self.item_results
                if r.job_id == job_id and r.operation == operation and r.status in done
            }

    def insert_cleanup_result(self, result: CleanupResult) -> None:
        with self._lock:
            self.cleanup_results.append(result)

    def fetch_cleanup_result(self, job_id: int) -> Optional[CleanupResult]:
        with self._lock:
            for result in reversed(self.cleanup_results):
                if result.job_id == job_id:
                    return result
            return None

    def mark_job_finished(self, job_id: int) -> None:
        with self._lock:
            job = self._jobs[job_id]
            self._jobs[job_id] = replace(job, completed_at=_now_iso())
            self._claimed.discard(job_id)

    def insert_deprovision_record(self, record: DeprovisionRecord) -> None:
        with self._lock:
            self.deprovision_records.append(record)

    def fetch_deprovision_phase(self, user_id: str) -> int:
        with self._lock:
            phases = [r.phase for r in self.deprovision_records if r.user_id == user_id]
            return max(phases, default=0)
