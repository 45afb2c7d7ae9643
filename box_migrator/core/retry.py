"""
Retry policy shared by every remote call site.

One policy object decides, per fault classification, whether and how long to
wait before trying a step again. Call sites only choose the attempt ceiling
and, for creations, the lookup to run on a conflict.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional, TypeVar

from box_migrator.core.config import RetryConfig
from box_migrator.core.faults import classify_exception
from box_migrator.exceptions import (
    FaultKind,
    MigratorError,
    RemoteFault,
    RetriesExhaustedError,
)
from box_migrator.utils.logging import log_with_context

T = TypeVar("T")

Classifier = Callable[..., RemoteFault]


class RetryPolicy:
    """Bounded retries with per-classification backoff.

    * ``RateLimited`` on attempt *k* sleeps ``rate_limit_base_seconds ** k``
    * ``TransientServerFault`` and ``ClientTimeout`` sleep a fixed interval
    * ``Conflict`` runs the supplied lookup instead of retrying the creation
    * ``PermanentFault`` propagates immediately
    * running out of attempts raises :class:`RetriesExhaustedError`

    Args:
        transient_backoff_seconds: Fixed wait after a transient fault
        rate_limit_base_seconds: Base of the exponential wait after a 429
        sleep: Sleep function; defaults to ``time.sleep`` looked up at call time
    """

    def __init__(
        self,
        transient_backoff_seconds: float = 2.0,
        rate_limit_base_seconds: float = 2.0,
        sleep: Optional[Callable[[float], Any]] = None,
    ) -> None:
        self.transient_backoff_seconds = transient_backoff_seconds
        self.rate_limit_base_seconds = rate_limit_base_seconds
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            transient_backoff_seconds=config.transient_backoff_seconds,
            rate_limit_base_seconds=config.rate_limit_base_seconds,
        )

    def backoff_seconds(self, fault: RemoteFault, attempt: int) -> float:
        """Seconds to wait after ``fault`` was raised by 1-based ``attempt``."""
        if fault.kind == FaultKind.RATE_LIMITED:
            return float(self.rate_limit_base_seconds**attempt)
        return float(self.transient_backoff_seconds)

    def sleep(self, seconds: float) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
        else:
            time.sleep(seconds)

    def attempt(
        self,
        step_fn: Callable[[], T],
        max_attempts: int,
        classify: Classifier = classify_exception,
        on_conflict: Optional[Callable[[], T]] = None,
        label: str = "",
        correlation_id: Optional[str] = None,
        **log_context: Any,
    ) -> T:
        """Run ``step_fn`` until it succeeds or the policy gives up.

        Args:
            step_fn: Zero-argument callable performing the remote step
            max_attempts: Total number of tries allowed (at least 1)
            classify: Maps a raised exception to a :class:`RemoteFault`
            on_conflict: Lookup returning the existing resource on a 409
            label: Step description for logs and faults
            correlation_id: Correlation id of the call group
            **log_context: Extra structured log fields

        Returns:
            Whatever ``step_fn`` (or ``on_conflict``) returned

        Raises:
            RemoteFault: A permanent fault, or a conflict with no lookup
            RetriesExhaustedError: A retryable fault persisted on every attempt
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        last_fault: RemoteFault | None = None
        for attempt in range(1, max_attempts + 1):
            cause: Exception | None = None
            try:
                return step_fn()
            except RetriesExhaustedError:
                raise
            except RemoteFault as exc:
                fault = exc
            except MigratorError:
                raise
            except Exception as exc:
                cause = exc
                fault = classify(exc, label=label, correlation_id=correlation_id)

            if fault.kind == FaultKind.CONFLICT and on_conflict is not None:
                log_with_context(
                    logging.INFO,
                    f"{label}: resource already exists, looking it up",
                    correlation_id=correlation_id,
                    step=label,
                    **log_context,
                )
                return on_conflict()

            if not fault.retryable:
                if cause is not None:
                    raise fault from cause
                raise fault

            last_fault = fault
            if attempt < max_attempts:
                delay = self.backoff_seconds(fault, attempt)
                log_with_context(
                    logging.WARNING,
                    f"{label}: {fault.kind.value} on attempt {attempt}/{max_attempts}, "
                    f"retrying in {delay:.1f} seconds",
                    correlation_id=correlation_id,
                    step=label,
                    fault_kind=fault.kind.value,
                    status_code=fault.status_code,
                    attempt=attempt,
                    **log_context,
                )
                self.sleep(delay)

        assert last_fault is not None
        log_with_context(
            logging.ERROR,
            f"{label}: giving up after {max_attempts} attempts ({last_fault.kind.value})",
            correlation_id=correlation_id,
            step=label,
            fault_kind=last_fault.kind.value,
            status_code=last_fault.status_code,
            **log_context,
        )
        raise RetriesExhaustedError(last_fault, max_attempts) from last_fault
