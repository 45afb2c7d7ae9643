"""
Run summary logging for migration jobs and deprovision runs.

Kept out of the workflows so they stay focused on control flow. Each function
takes the report of a finished (or failed) run and emits structured records:
key statistics are passed as kwargs so they show up as extra fields in JSON
log output while remaining readable in the console formatter.
"""

from __future__ import annotations

import logging
import traceback
from typing import TYPE_CHECKING, Optional

from box_migrator.exceptions import RemoteFault, WorkflowAbortedError
from box_migrator.utils.logging import log_with_context

if TYPE_CHECKING:
    from box_migrator.core.deprovision import DeprovisionReport
    from box_migrator.core.migration import MigrationRunReport
    from box_migrator.types import MigrationJob


def log_job_success(report: MigrationRunReport) -> None:
    """Log the outcome of a migration job that reached Finish.

    Args:
        report: The run report returned by the workflow
    """
    subject = {"job_id": report.job_id, "user_login": report.user_login}

    if report.item_failures:
        log_with_context(
            logging.WARNING,
            f"MIGRATION JOB {report.job_id} FINISHED WITH ITEM FAILURES",
            outcome="finished_with_failures",
            **subject,
        )
    else:
        log_with_context(
            logging.INFO,
            f"MIGRATION JOB {report.job_id} FINISHED SUCCESSFULLY",
            outcome="success",
            **subject,
        )

    log_with_context(
        logging.INFO,
        f"Resumed after {report.resumed_from.name}, reached {report.reached.name} "
        f"in {report.duration:.1f} seconds",
        duration_seconds=report.duration,
        resume_phase=report.resumed_from.name,
        **subject,
    )
    for summary in (report.moves, report.collaborations):
        if summary is None:
            continue
        log_with_context(
            logging.WARNING if summary.failed else logging.INFO,
            f"{summary.phase}: {summary.succeeded} succeeded, "
            f"{summary.skipped} skipped, {summary.failed} failed",
            stat=summary.phase,
            count=summary.total,
            **subject,
        )
    if report.cleanup_skipped:
        log_with_context(logging.INFO, "Cleanup skipped for this job", **subject)
    elif report.cleanup is not None:
        log_with_context(
            logging.INFO,
            f"Cleanup: group deleted={report.cleanup.group_deleted}, viewer "
            f"collaboration created={report.cleanup.viewer_collaboration_created}",
            **subject,
        )

    if report.item_failures:
        log_with_context(
            logging.WARNING,
            "Failed items were left in place and are listed in the operator "
            "digest and in the item results table.",
            **subject,
        )


def log_job_failure(
    job: MigrationJob, exception: BaseException, duration: float
) -> None:
    """Log a migration job run that stopped before Finish.

    Args:
        job: The job as dequeued
        exception: Why it stopped
        duration: Seconds spent before the failure
    """
    subject = {"job_id": job.job_id, "user_login": job.user_login}
    phase: Optional[str] = getattr(exception, "phase", None)
    cause = exception.cause if isinstance(exception, WorkflowAbortedError) else None
    fault = cause if isinstance(cause, RemoteFault) else exception

    log_with_context(
        logging.ERROR,
        f"MIGRATION JOB {job.job_id} FAILED"
        + (f" DURING {phase.upper()}" if phase else ""),
        outcome="failed",
        phase=phase,
        exception_type=type(exception).__name__,
        exception_message=str(exception),
        duration_seconds=duration,
        **subject,
    )
    if isinstance(fault, RemoteFault):
        log_with_context(
            logging.ERROR,
            f"Last remote step: {fault.label or 'unknown'} ({fault.kind.value})",
            correlation_id=fault.correlation_id,
            fault_kind=fault.kind.value,
            status_code=fault.status_code,
            response=fault.response_body[:1000] or None,
            **subject,
        )
    else:
        tb = traceback.format_exc()
        if tb and tb.strip() != "NoneType: None":
            log_with_context(logging.ERROR, f"Traceback:\n{tb}", **subject)

    log_with_context(
        logging.ERROR,
        "The job was released and resumes from its last completed phase on the "
        "next 'box-migrator run-next'.",
        **subject,
    )


def log_deprovision_summary(report: DeprovisionReport) -> None:
    """Log the outcome of a deprovision run."""
    subject = {"user_id": report.user_id, "user_login": report.user_login}
    log_with_context(
        logging.WARNING if report.failures else logging.INFO,
        f"DEPROVISION OF {report.user_login} REACHED {report.reached.name}",
        outcome="finished_with_failures" if report.failures else "success",
        duration_seconds=report.duration,
        **subject,
    )
    log_with_context(
        logging.INFO,
        f"Drain rounds: {report.rounds}, removed: {report.removed}, "
        f"purged from trash: {report.trash_purged}",
        stat="drain",
        count=report.removed,
        **subject,
    )
    if report.failures:
        log_with_context(
            logging.WARNING,
            f"{len(report.failures)} removal(s) failed during drain",
            stat="drain_failures",
            count=len(report.failures),
            **subject,
        )
    if not report.converted:
        log_with_context(
            logging.INFO, "Account was not converted in this run", **subject
        )
    if not report.notified:
        log_with_context(
            logging.INFO, "Account holder was not notified in this run", **subject
        )
