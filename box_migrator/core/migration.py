"""
Migration workflow for one job.

Drives Bootstrap -> MoveItems -> UpdateCollaborations -> Cleanup -> Finish for
the account behind a :class:`~box_migrator.types.MigrationJob`, starting from
the point durable state says was reached last time. Batch phases fan out per
item and isolate item faults; singleton phases abort the run on any fault.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, TypeVar

from tqdm import tqdm

from box_migrator.core import phases
from box_migrator.core.context import WorkflowContext
from box_migrator.core.digest import report_abort, report_phase_failures
from box_migrator.core.executor import new_correlation_id
from box_migrator.core.resume import MigrationPhase, ResumePoint, compute_resume_point
from box_migrator.exceptions import (
    JobStoreError,
    MigratorError,
    RemoteFault,
    WorkflowAbortedError,
)
from box_migrator.services.box_client import BoxClient
from box_migrator.types import (
    BootstrapResult,
    CleanupResult,
    ItemOperation,
    ItemResult,
    ItemStatus,
    MigrationJob,
    PhaseFailure,
    PhaseSummary,
    TransferItem,
    TransferPermission,
)
from box_migrator.utils.logging import log_with_context

W = TypeVar("W", TransferItem, TransferPermission)

PHASE_BOOTSTRAP = "bootstrap"
PHASE_MOVE = "move_items"
PHASE_COLLABORATIONS = "update_collaborations"
PHASE_CLEANUP = "cleanup"
PHASE_FINISH = "finish"


@dataclass
class MigrationRunReport:
    """What one run of a job did."""

    job_id: int
    user_login: str
    resumed_from: MigrationPhase
    reached: MigrationPhase
    moves: Optional[PhaseSummary] = None
    collaborations: Optional[PhaseSummary] = None
    cleanup: Optional[phases.CleanupOutcome] = None
    cleanup_skipped: bool = False
    duration: float = 0.0

    @property
    def item_failures(self) -> int:
        return sum(s.failed for s in (self.moves, self.collaborations) if s is not None)


class MigrationWorkflow:
    """Runs one migration job to completion or to its first fatal fault.

    Args:
        context: Run context (config, store, clients, notifier, executor)
        job: The job to run, as dequeued from the store
    """

    def __init__(self, context: WorkflowContext, job: MigrationJob) -> None:
        self.context = context
        self.job = job
        self._admin: Optional[BoxClient] = None
        self._managed: Optional[BoxClient] = None
        self._user: Optional[BoxClient] = None

    # -- Clients, created on first use ----------------------------------------

    @property
    def admin_client(self) -> BoxClient:
        if self._admin is None:
            self._admin = self.context.clients.admin()
        return self._admin

    @property
    def managed_client(self) -> BoxClient:
        if self._managed is None:
            self._managed = self.context.clients.for_user(self.job.managed_user_id)
        return self._managed

    @property
    def user_client(self) -> BoxClient:
        if self._user is None:
            assert self.job.user_id is not None
            self._user = self.context.clients.for_user(self.job.user_id)
        return self._user

    @property
    def _subject(self) -> dict[str, object]:
        return {
            "job_id": self.job.job_id,
            "user_login": self.job.user_login,
            "user_id": self.job.user_id,
        }

    # -- Driver ---------------------------------------------------------------

    def run(self) -> MigrationRunReport:
        """Run every phase the job still needs.

        Raises:
            WorkflowAbortedError: When bootstrap, cleanup or finish fails
        """
        started = time.time()
        point = compute_resume_point(self.job, self.context.store)
        report = MigrationRunReport(
            job_id=self.job.job_id,
            user_login=self.job.user_login,
            resumed_from=point.phase,
            reached=point.phase,
        )
        log_with_context(
            logging.INFO,
            f"Starting job {self.job.job_id} for {self.job.user_login} "
            f"(resuming after {point.phase.name})",
            resume_phase=point.phase.name,
            **self._subject,
        )

        if point.phase == MigrationPhase.FINISHED:
            return report

        if self.job.skip_all:
            log_with_context(
                logging.INFO,
                f"Job {self.job.job_id} is flagged skip-all, marking it finished",
                **self._subject,
            )
            self._finish()
            report.reached = MigrationPhase.FINISHED
            report.duration = time.time() - started
            return report

        if point.phase < MigrationPhase.BOOTSTRAPPED:
            self._bootstrap()
            point = compute_resume_point(self.job, self.context.store)
            report.reached = MigrationPhase.BOOTSTRAPPED

        if point.phase < MigrationPhase.ITEMS_MOVED:
            report.moves = self._move_items(point)
            report.reached = MigrationPhase.ITEMS_MOVED

        if point.phase < MigrationPhase.COLLABORATIONS_UPDATED:
            report.collaborations = self._update_collaborations(point)
            report.reached = MigrationPhase.COLLABORATIONS_UPDATED

        if point.phase < MigrationPhase.CLEANED_UP:
            if self.job.skip_cleanup:
                log_with_context(
                    logging.INFO,
                    f"Job {self.job.job_id} is flagged skip-cleanup, leaving group in place",
                    **self._subject,
                )
                report.cleanup_skipped = True
            else:
                report.cleanup = self._cleanup()
            report.reached = MigrationPhase.CLEANED_UP

        self._finish()
        report.reached = MigrationPhase.FINISHED
        report.duration = time.time() - started
        return report

    # -- Singleton phases -----------------------------------------------------

    def _abort(self, phase: str, fault: Exception) -> WorkflowAbortedError:
        log_with_context(
            logging.ERROR,
            f"Job {self.job.job_id} aborted during {phase}: {fault}",
            phase=phase,
            correlation_id=getattr(fault, "correlation_id", None),
            **self._subject,
        )
        report_abort(
            self.context.notifier,
            self.context.config.notifications,
            phase,
            fault,
            self._subject,
        )
        return WorkflowAbortedError(
            f"Job {self.job.job_id} aborted during {phase}: {fault}",
            phase=phase,
            cause=fault,
        )

    def _bootstrap(self) -> None:
        cid = new_correlation_id()
        try:
            outcome = phases.bootstrap_account(
                self.context.executor,
                self.admin_client,
                self.managed_client,
                self.job.user_login,
                self.job.managed_user_id,
                self.context.config.retry.bootstrap_max_attempts,
                cid,
            )
        except RemoteFault as fault:
            raise self._abort(PHASE_BOOTSTRAP, fault) from fault

        try:
            self.context.store.insert_bootstrap_result(
                BootstrapResult(
                    job_id=self.job.job_id,
                    user_id=outcome.user_id,
                    managed_folder_id=outcome.managed_folder_id,
                    correlation_id=cid,
                    request=outcome.request,
                    response=outcome.response,
                )
            )
        except JobStoreError as e:
            raise self._abort(PHASE_BOOTSTRAP, e) from e
        self.job.user_id = outcome.user_id
        self.job.managed_folder_id = outcome.managed_folder_id

    def _cleanup(self) -> phases.CleanupOutcome:
        assert self.job.user_id is not None and self.job.managed_folder_id is not None
        cid = new_correlation_id()
        try:
            outcome = phases.cleanup_account(
                self.context.executor,
                self.admin_client,
                self.managed_client,
                self.job.user_id,
                self.job.managed_folder_id,
                self.context.config.retry.bootstrap_max_attempts,
                cid,
            )
            self.context.store.insert_cleanup_result(
                CleanupResult(
                    job_id=self.job.job_id,
                    correlation_id=cid,
                    group_deleted=outcome.group_deleted,
                    viewer_collaboration_created=outcome.viewer_collaboration_created,
                    request=phases.audit_payload(
                        {
                            "UserId": self.job.user_id,
                            "ManagedUserId": self.job.managed_user_id,
                            "ManagedFolderId": self.job.managed_folder_id,
                        }
                    ),
                    response=phases.audit_payload(
                        {
                            "GroupDeleted": outcome.group_deleted,
                            "ViewerCollaborationCreated": outcome.viewer_collaboration_created,
                        }
                    ),
                )
            )
        except (RemoteFault, JobStoreError) as e:
            raise self._abort(PHASE_CLEANUP, e) from e
        return outcome

    def _finish(self) -> None:
        try:
            self.context.store.mark_job_finished(self.job.job_id)
        except JobStoreError as e:
            raise self._abort(PHASE_FINISH, e) from e
        log_with_context(
            logging.INFO, f"Job {self.job.job_id} finished", **self._subject
        )

    # -- Batch phases ---------------------------------------------------------

    def _skip_reason(self, work: TransferItem | TransferPermission) -> Optional[str]:
        """Why an item can never be processed, or None if it can."""
        skip_code = getattr(work, "skip_reason", None)
        if skip_code and skip_code in self.context.config.non_movable_skip_reasons:
            return f"not movable (skip reason {skip_code})"
        if not phases.is_valid_box_id(work.source_item_id):
            return "missing or non-numeric source item id"
        return None

    def _run_batch(
        self,
        phase: str,
        operation: ItemOperation,
        work: Sequence[W],
        process: Callable[[W, str], str],
    ) -> PhaseSummary:
        """Fan out ``process`` over ``work`` and persist every outcome.

        Workers only talk to Box; results are written to the store here, in
        the driving thread, as each future completes.
        """
        summary = PhaseSummary(phase=phase)
        store = self.context.store

        runnable: list[W] = []
        for entry in work:
            reason = self._skip_reason(entry)
            if reason is None:
                runnable.append(entry)
                continue
            log_with_context(
                logging.WARNING,
                f"Skipping {entry.kind.value} record {entry.record_id}: {reason}",
                item_id=entry.source_item_id,
                **self._subject,
            )
            store.insert_item_result(
                ItemResult(
                    job_id=self.job.job_id,
                    record_id=entry.record_id,
                    operation=operation,
                    status=ItemStatus.SKIPPED,
                    correlation_id=new_correlation_id(),
                    source_item_id=entry.source_item_id,
                    detail=reason,
                )
            )
            summary.skipped += 1

        def attempt(entry: W) -> tuple[W, str, str, Optional[RemoteFault]]:
            cid = new_correlation_id()
            try:
                return entry, cid, process(entry, cid), None
            except RemoteFault as fault:
                return entry, cid, "", fault

        pbar = tqdm(
            total=len(runnable),
            desc=f"{phase} ({self.job.user_login})",
            unit="item",
            disable=not self.context.config.show_progress or not runnable,
        )
        with ThreadPoolExecutor(max_workers=self.context.max_workers) as pool:
            futures = [pool.submit(attempt, entry) for entry in runnable]
            for future in as_completed(futures):
                entry, cid, detail, fault = future.result()
                request = phases.audit_payload(
                    {
                        "UserId": self.job.user_id,
                        "ItemId": entry.source_item_id,
                        "ItemType": entry.kind.value,
                        "ManagedFolderId": self.job.managed_folder_id,
                    }
                )
                if fault is None:
                    status, response = ItemStatus.SUCCEEDED, detail
                    summary.succeeded += 1
                else:
                    status, response = ItemStatus.FAILED, fault.response_body
                    detail = f"{fault.kind.value}: {fault}"
                    summary.failures.append(
                        PhaseFailure(
                            record_id=entry.record_id,
                            fault=fault,
                            item_id=entry.source_item_id,
                        )
                    )
                store.insert_item_result(
                    ItemResult(
                        job_id=self.job.job_id,
                        record_id=entry.record_id,
                        operation=operation,
                        status=status,
                        correlation_id=cid,
                        source_item_id=entry.source_item_id,
                        detail=detail,
                        request=request,
                        response=response,
                    )
                )
                pbar.update(1)
        pbar.close()

        log_with_context(
            logging.INFO,
            f"{phase}: {summary.succeeded} succeeded, {summary.skipped} skipped, "
            f"{summary.failed} failed",
            phase=phase,
            **self._subject,
        )
        report_phase_failures(
            self.context.notifier,
            self.context.config.notifications,
            summary,
            self._subject,
        )
        return summary

    def _move_items(self, point: ResumePoint) -> PhaseSummary:
        assert self.job.managed_folder_id is not None
        managed_folder_id = self.job.managed_folder_id
        max_attempts = self.context.config.retry.item_max_attempts
        client = self.user_client

        def move(item: TransferItem, cid: str) -> str:
            assert item.source_item_id is not None
            outcome = phases.move_item(
                self.context.executor,
                client,
                item.kind,
                item.source_item_id,
                managed_folder_id,
                max_attempts,
                cid,
                user_id=self.job.user_id,
            )
            return outcome.response if outcome.moved else "already in managed folder"

        return self._run_batch(PHASE_MOVE, ItemOperation.MOVE, point.pending_items, move)

    def _update_collaborations(self, point: ResumePoint) -> PhaseSummary:
        assert self.job.user_id is not None
        owner_id = self.job.user_id
        max_attempts = self.context.config.retry.item_max_attempts
        client = self.user_client

        def downgrade(permission: TransferPermission, cid: str) -> str:
            assert permission.source_item_id is not None
            outcome = phases.downgrade_collaborations(
                self.context.executor,
                client,
                permission.kind,
                permission.source_item_id,
                owner_id,
                max_attempts,
                cid,
                user_id=owner_id,
            )
            if outcome.already_satisfied:
                return "no collaborations needed downgrading"
            return phases.audit_payload(
                {"UpdatedCollaborationIds": outcome.updated_collaboration_ids}
            )

        return self._run_batch(
            PHASE_COLLABORATIONS,
            ItemOperation.COLLABORATION_UPDATE,
            point.pending_permissions,
            downgrade,
        )


def run_job(context: WorkflowContext, job: MigrationJob) -> MigrationRunReport:
    """Convenience wrapper: run one job with a fresh workflow instance."""
    try:
        return MigrationWorkflow(context, job).run()
    except WorkflowAbortedError:
        raise
    except MigratorError as e:
        raise WorkflowAbortedError(
            f"Job {job.job_id} failed: {e}", phase="unknown", cause=e
        ) from e
