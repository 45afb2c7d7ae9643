"""Custom exception hierarchy for the Box migration tool."""

from __future__ import annotations

import json
from enum import Enum
from typing import Any


class MigratorError(Exception):
    """Base exception for all migration-related errors."""


class ConfigError(MigratorError):
    """Raised when configuration is invalid or missing."""


class JobStoreError(MigratorError):
    """Raised when the job store cannot read or persist workflow state."""


class WorkflowAbortedError(MigratorError):
    """Raised when a singleton phase fails and the job or account run stops.

    Durable state is left exactly as of the last completed phase, so the next
    scheduled attempt resumes rather than restarts.
    """

    def __init__(self, message: str, phase: str, cause: Exception | None = None):
        super().__init__(message)
        self.phase = phase
        self.cause = cause


class DrainLimitExceededError(WorkflowAbortedError):
    """Raised when the deprovision drain loop never reports an empty round."""

    def __init__(self, user_id: str, rounds: int):
        super().__init__(
            f"Drain loop for user {user_id} still found items after {rounds} rounds",
            phase="drain",
        )
        self.user_id = user_id
        self.rounds = rounds


class BoxAPIError(Exception):
    """Raw non-2xx response from the Box API.

    Raised by :class:`~box_migrator.services.box_client.BoxClient`; the step
    executor classifies it into one of the :class:`RemoteFault` subclasses.
    """

    def __init__(
        self,
        status_code: int,
        body: str = "",
        method: str = "",
        url: str = "",
    ):
        super().__init__(f"{method} {url} returned {status_code}: {body[:500]}")
        self.status_code = status_code
        self.body = body
        self.method = method
        self.url = url

    @property
    def code(self) -> str | None:
        """The Box error ``code`` field (e.g. ``item_name_in_use``), if any."""
        try:
            payload: Any = json.loads(self.body)
        except ValueError:
            return None
        if isinstance(payload, dict):
            return payload.get("code")
        return None


# ---------------------------------------------------------------------------
# Classified remote faults
# ---------------------------------------------------------------------------


class FaultKind(str, Enum):
    """Classification of a failed remote step."""

    RATE_LIMITED = "RateLimited"
    TRANSIENT_SERVER_FAULT = "TransientServerFault"
    CLIENT_TIMEOUT = "ClientTimeout"
    CONFLICT = "Conflict"
    PERMANENT_FAULT = "PermanentFault"


class RemoteFault(MigratorError):
    """A classified failure of one remote step.

    Carries everything an operator needs for diagnosis: the classification,
    the provider status code and raw response body, the step label and the
    correlation id of the call group.
    """

    kind: FaultKind = FaultKind.PERMANENT_FAULT

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        response_body: str = "",
        label: str = "",
        correlation_id: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
        self.label = label
        self.correlation_id = correlation_id

    @property
    def retryable(self) -> bool:
        return self.kind in (
            FaultKind.RATE_LIMITED,
            FaultKind.TRANSIENT_SERVER_FAULT,
            FaultKind.CLIENT_TIMEOUT,
        )

    def to_dict(self) -> dict[str, Any]:
        """Flat representation used for digests and audit payloads."""
        return {
            "kind": self.kind.value,
            "message": str(self),
            "status_code": self.status_code,
            "label": self.label,
            "correlation_id": self.correlation_id,
            "response_body": self.response_body,
        }


class RateLimited(RemoteFault):
    """The provider signalled backpressure (HTTP 429)."""

    kind = FaultKind.RATE_LIMITED


class TransientServerFault(RemoteFault):
    """Provider-side timeout, 5xx or dropped connection."""

    kind = FaultKind.TRANSIENT_SERVER_FAULT


class ClientTimeout(RemoteFault):
    """The call exceeded its caller-side timeout."""

    kind = FaultKind.CLIENT_TIMEOUT


class Conflict(RemoteFault):
    """The resource already exists (HTTP 409)."""

    kind = FaultKind.CONFLICT


class PermanentFault(RemoteFault):
    """Any fault that retrying will not fix."""

    kind = FaultKind.PERMANENT_FAULT


class ResolutionAmbiguous(PermanentFault):
    """Zero or more than one account matched a login."""


class MalformedResponse(PermanentFault):
    """Expected identifiers were missing or not numeric."""


class RetriesExhaustedError(RemoteFault):
    """A retryable fault persisted through every allowed attempt."""

    def __init__(self, last_fault: RemoteFault, attempts: int):
        super().__init__(
            f"{last_fault.label or 'step'} failed after {attempts} attempts: {last_fault}",
            status_code=last_fault.status_code,
            response_body=last_fault.response_body,
            label=last_fault.label,
            correlation_id=last_fault.correlation_id,
        )
        self.last_fault = last_fault
        self.attempts = attempts
        self.kind = last_fault.kind

    @property
    def retryable(self) -> bool:
        return False

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["exhausted"] = True
        data["attempts"] = self.attempts
        return data
