"""
Failure digests.

Per-item faults in batch phases are isolated while the phase runs and
surfaced once at its end: one ERROR log record per failure plus a single
operator email describing all of them.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from box_migrator.core.config import NotificationConfig
from box_migrator.exceptions import RemoteFault
from box_migrator.services.notifications import Notifier, notify_operators
from box_migrator.types import PhaseSummary
from box_migrator.utils.logging import log_with_context


def build_phase_digest(
    summary: PhaseSummary, subject: dict[str, Any]
) -> dict[str, Any]:
    """Operator-facing description of a phase's isolated failures.

    Args:
        summary: Counts and failures of the phase
        subject: Identifiers of the job or account the phase ran for
    """
    return {
        "phase": summary.phase,
        **subject,
        "succeeded": summary.succeeded,
        "skipped": summary.skipped,
        "failed": summary.failed,
        "failures": [f.to_dict() for f in summary.failures],
    }


def report_phase_failures(
    notifier: Notifier,
    config: NotificationConfig,
    summary: PhaseSummary,
    subject: dict[str, Any],
) -> Optional[dict[str, Any]]:
    """Log and mail the digest for a phase; no-op when nothing failed.

    Returns:
        The digest that was reported, or None
    """
    if not summary.failures:
        return None

    for failure in summary.failures:
        fault = failure.fault
        log_with_context(
            logging.ERROR,
            f"{summary.phase}: {failure.record_id} failed ({fault.kind.value}): {fault}",
            correlation_id=fault.correlation_id,
            fault_kind=fault.kind.value,
            status_code=fault.status_code,
            item_id=failure.item_id,
            response=fault.response_body[:1000] or None,
            **subject,
        )

    digest = build_phase_digest(summary, subject)
    log_with_context(
        logging.WARNING,
        f"{summary.phase}: {summary.failed} of {summary.total} item(s) failed",
        phase=summary.phase,
        failed=summary.failed,
        **subject,
    )
    notify_operators(
        notifier,
        config,
        f"Box migration: {summary.failed} failure(s) during {summary.phase}",
        digest,
    )
    return digest


def report_abort(
    notifier: Notifier,
    config: NotificationConfig,
    phase: str,
    fault: Exception,
    subject: dict[str, Any],
) -> dict[str, Any]:
    """Mail the operators about a run that stopped in a singleton phase."""
    if isinstance(fault, RemoteFault):
        details: dict[str, Any] = fault.to_dict()
    else:
        details = {"kind": type(fault).__name__, "message": str(fault)}
    digest = {"phase": phase, **subject, "fault": details}
    notify_operators(notifier, config, f"Box migration aborted during {phase}", digest)
    return digest
