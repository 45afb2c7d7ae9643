"""
Step execution: one remote call (or a small group of calls) with structured
logging, fault classification and a uniform result shape.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable, Optional, TypeVar

from box_migrator.core.faults import classify_exception
from box_migrator.core.retry import Classifier, RetryPolicy
from box_migrator.exceptions import MigratorError, RemoteFault
from box_migrator.types import StepResult
from box_migrator.utils.logging import log_with_context

T = TypeVar("T")


def new_correlation_id() -> str:
    """Generate a fresh correlation id for one remote-call group."""
    return uuid.uuid4().hex


class StepExecutor:
    """Runs remote steps and turns every failure into a typed fault.

    Args:
        retry_policy: Policy used by :meth:`call` and :meth:`run_step`
        classify: Maps raw exceptions to :class:`RemoteFault` subclasses
    """

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        classify: Classifier = classify_exception,
    ) -> None:
        self.retry_policy = retry_policy or RetryPolicy()
        self._classify = classify

    def execute(
        self,
        label: str,
        operation: Callable[[], T],
        correlation_id: Optional[str] = None,
        attempt: int = 1,
        **context: Any,
    ) -> T:
        """Run ``operation`` once, logging intent and outcome.

        Raises:
            RemoteFault: The classified fault, chained from the original exception
        """
        log_with_context(
            logging.DEBUG,
            f"Starting: {label}",
            correlation_id=correlation_id,
            step=label,
            attempt=attempt,
            **context,
        )
        started = time.monotonic()
        try:
            value = operation()
        except RemoteFault as fault:
            self._log_fault(label, fault, started, correlation_id, attempt, context)
            raise
        except MigratorError:
            raise
        except Exception as exc:
            fault = self._classify(exc, label=label, correlation_id=correlation_id)
            self._log_fault(label, fault, started, correlation_id, attempt, context)
            raise fault from exc

        log_with_context(
            logging.DEBUG,
            f"Succeeded: {label}",
            correlation_id=correlation_id,
            step=label,
            attempt=attempt,
            outcome="success",
            duration_ms=int((time.monotonic() - started) * 1000),
            **context,
        )
        return value

    def _log_fault(
        self,
        label: str,
        fault: RemoteFault,
        started: float,
        correlation_id: Optional[str],
        attempt: int,
        context: dict[str, Any],
    ) -> None:
        if not fault.label:
            fault.label = label
        if fault.correlation_id is None:
            fault.correlation_id = correlation_id
        log_with_context(
            logging.WARNING,
            f"Failed: {label} ({fault.kind.value}): {fault}",
            correlation_id=correlation_id,
            step=label,
            attempt=attempt,
            outcome="failure",
            fault_kind=fault.kind.value,
            status_code=fault.status_code,
            duration_ms=int((time.monotonic() - started) * 1000),
            response=fault.response_body[:1000] or None,
            **context,
        )

    def call(
        self,
        label: str,
        operation: Callable[[], T],
        max_attempts: int,
        correlation_id: Optional[str] = None,
        on_conflict: Optional[Callable[[], T]] = None,
        **context: Any,
    ) -> T:
        """Run ``operation`` under the retry policy.

        Returns:
            The operation's (or the conflict lookup's) return value

        Raises:
            RemoteFault: Permanent faults and :class:`RetriesExhaustedError`
        """
        attempts = 0

        def step() -> T:
            nonlocal attempts
            attempts += 1
            return self.execute(
                label, operation, correlation_id, attempt=attempts, **context
            )

        return self.retry_policy.attempt(
            step,
            max_attempts,
            classify=self._classify,
            on_conflict=on_conflict,
            label=label,
            correlation_id=correlation_id,
            **context,
        )

    def run_step(
        self,
        label: str,
        operation: Callable[[], Any],
        max_attempts: int,
        correlation_id: Optional[str] = None,
        on_conflict: Optional[Callable[[], Any]] = None,
        **context: Any,
    ) -> StepResult:
        """Like :meth:`call`, but capture the fault in a :class:`StepResult`.

        Used for per-item work where one failure must not stop the batch.
        """
        cid = correlation_id or new_correlation_id()
        attempts = 0

        def counted() -> Any:
            nonlocal attempts
            attempts += 1
            return operation()

        try:
            value = self.call(
                label,
                counted,
                max_attempts,
                correlation_id=cid,
                on_conflict=on_conflict,
                **context,
            )
        except RemoteFault as fault:
            return StepResult(
                label=label,
                correlation_id=cid,
                fault=fault,
                attempts=max(attempts, 1),
            )
        return StepResult(
            label=label, correlation_id=cid, value=value, attempts=max(attempts, 1)
        )
