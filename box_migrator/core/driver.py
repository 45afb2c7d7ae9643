"""
Scheduled entry points.

``seed_jobs`` turns newly completed transfers into migration jobs,
``run_next_job`` pops one job and runs it to completion, and
``run_deprovision`` takes one account through the deprovision workflow. The
CLI and any external scheduler call these; nothing here loops forever.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional

from box_migrator.core import phases
from box_migrator.core.context import WorkflowContext
from box_migrator.core.deprovision import DeprovisionReport, DeprovisionWorkflow
from box_migrator.core.digest import report_abort
from box_migrator.core.executor import new_correlation_id
from box_migrator.core.migration import MigrationRunReport, MigrationWorkflow
from box_migrator.core.migration_logging import (
    log_deprovision_summary,
    log_job_failure,
    log_job_success,
)
from box_migrator.exceptions import (
    JobStoreError,
    MigratorError,
    RemoteFault,
    WorkflowAbortedError,
)
from box_migrator.types import DeprovisionTarget, MigrationJob
from box_migrator.utils.logging import (
    is_debug_api_enabled,
    log_with_context,
    remove_account_logger,
    setup_account_logger,
)


@dataclass
class JobRunOutcome:
    job: MigrationJob
    report: MigrationRunReport


def seed_jobs(context: WorkflowContext) -> int:
    """Create jobs for newly completed transfers. Returns how many were created."""
    created = context.store.seed_jobs()
    if created:
        log_with_context(logging.INFO, f"Seeded {created} new migration job(s)")
    else:
        log_with_context(logging.INFO, "No newly completed transfers to seed")
    return created


def _account_log(
    context: WorkflowContext, user_login: str, user_id: Optional[str]
) -> Optional[logging.Handler]:
    if not context.config.log_dir:
        return None
    return setup_account_logger(
        context.config.log_dir,
        user_login,
        user_id=user_id,
        verbose=True,
        debug_api=is_debug_api_enabled(),
    )


def run_next_job(
    context: WorkflowContext, attempted: Optional[set[int]] = None
) -> Optional[JobRunOutcome]:
    """Claim the next unfinished job and run it.

    Args:
        context: Run context
        attempted: Job ids already run by the caller; a job found in here is
            released again and not rerun. The claimed job id is added to it.

    Returns:
        The outcome, or None when no job was waiting

    Raises:
        MigratorError: When the run stopped early; the job is released with
            ``job_store.retry_delay_seconds`` before it can be dequeued again
            and then resumes from its last completed phase
    """
    job = context.store.dequeue_next_job()
    if job is None:
        log_with_context(logging.INFO, "No unfinished migration jobs")
        return None
    if attempted is not None:
        if job.job_id in attempted:
            context.store.release_job(
                job.job_id, context.config.job_store.retry_delay_seconds
            )
            log_with_context(
                logging.INFO,
                f"Job {job.job_id} was already attempted in this run; leaving it queued",
                job_id=job.job_id,
            )
            return None
        attempted.add(job.job_id)

    handler = _account_log(context, job.user_login, job.user_id)
    started = time.time()
    try:
        report = MigrationWorkflow(context, job).run()
    except MigratorError as e:
        try:
            context.store.release_job(
                job.job_id, context.config.job_store.retry_delay_seconds
            )
        except JobStoreError as release_error:
            log_with_context(
                logging.ERROR,
                f"Could not release job {job.job_id}; it becomes available again "
                f"when its lease expires: {release_error}",
                job_id=job.job_id,
            )
        log_job_failure(job, e, time.time() - started)
        if not isinstance(e, WorkflowAbortedError):
            # Aborts were already reported by the workflow
            report_abort(
                context.notifier,
                context.config.notifications,
                getattr(e, "phase", "unknown"),
                e,
                {"job_id": job.job_id, "user_login": job.user_login},
            )
        raise
    finally:
        if handler is not None:
            remove_account_logger(handler)

    log_job_success(report)
    return JobRunOutcome(job=job, report=report)


def resolve_deprovision_target(
    context: WorkflowContext, login: str
) -> DeprovisionTarget:
    """Look up the single enterprise account behind ``login``.

    Raises:
        WorkflowAbortedError: When the login matches zero or several accounts,
            or the lookup itself fails
    """
    cid = new_correlation_id()
    try:
        user = phases.resolve_account(
            context.executor,
            context.clients.admin(),
            login,
            context.config.retry.activity_max_attempts,
            cid,
        )
        user_id = phases.validate_box_id(user.get("id"), "user id")
    except RemoteFault as fault:
        report_abort(
            context.notifier,
            context.config.notifications,
            "resolve",
            fault,
            {"user_login": login},
        )
        raise WorkflowAbortedError(
            f"Could not resolve {login}: {fault}", phase="resolve", cause=fault
        ) from fault
    return DeprovisionTarget(user_id=user_id, user_login=login)


def run_deprovision(context: WorkflowContext, login: str) -> DeprovisionReport:
    """Resolve ``login`` and take the account through the deprovision workflow.

    Raises:
        MigratorError: When resolution or any phase fails
    """
    target = resolve_deprovision_target(context, login)
    handler = _account_log(context, target.user_login, target.user_id)
    try:
        report = DeprovisionWorkflow(context, target).run()
    except MigratorError as e:
        log_with_context(
            logging.ERROR,
            f"DEPROVISION OF {login} FAILED: {e}",
            outcome="failed",
            phase=getattr(e, "phase", None),
            exception_type=type(e).__name__,
            user_id=target.user_id,
            user_login=login,
        )
        raise
    finally:
        if handler is not None:
            remove_account_logger(handler)

    log_deprovision_summary(report)
    return report
