"""Shared type definitions for the Box migration tool.

Dataclasses for the durable workflow records (jobs, transfer items and their
results), TypedDicts for the Box API payload shapes the workflows read, and the
small enums that replace string comparisons on item kinds and outcomes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypedDict

from box_migrator.exceptions import RemoteFault

# ---------------------------------------------------------------------------
# Box API payload shapes
# ---------------------------------------------------------------------------


class BoxMini(TypedDict, total=False):
    """The ``{type, id, name, login}`` stub Box nests inside other objects."""

    type: str
    id: str
    name: str
    login: str


class BoxUser(TypedDict, total=False):
    """A user record from ``GET /users``."""

    type: str
    id: str
    name: str
    login: str
    status: str


class BoxItem(TypedDict, total=False):
    """A file or folder entry from a folder listing."""

    type: str
    id: str
    name: str
    owned_by: BoxMini
    parent: BoxMini
    is_externally_owned: bool


class BoxCollaboration(TypedDict, total=False):
    """A collaboration record from ``GET /files|folders/{id}/collaborations``."""

    type: str
    id: str
    role: str
    status: str
    item: BoxMini
    accessible_by: BoxMini


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ItemKind(str, Enum):
    """Kind of a movable Box item."""

    FILE = "file"
    FOLDER = "folder"


class RemovalKind(str, Enum):
    """What a drain-loop candidate removal acts on."""

    FILE = "file"
    FOLDER = "folder"
    COLLABORATION = "collaboration"


class ItemOperation(str, Enum):
    """Per-item operations recorded in the job store."""

    MOVE = "move"
    COLLABORATION_UPDATE = "collaboration_update"


class ItemStatus(str, Enum):
    """Outcome of one per-item operation."""

    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Jobs and their items
# ---------------------------------------------------------------------------


@dataclass
class MigrationJob:
    """One migration unit: everything transferred out of one source account."""

    job_id: int
    user_login: str
    managed_user_id: str
    user_id: str | None = None
    managed_folder_id: str | None = None
    skip_all: bool = False
    skip_cleanup: bool = False
    completed_at: str | None = None

    def __post_init__(self) -> None:
        if (self.user_id is None) != (self.managed_folder_id is None):
            raise ValueError(
                f"Job {self.job_id} has only one of user_id/managed_folder_id set"
            )

    @property
    def is_bootstrapped(self) -> bool:
        return self.user_id is not None and self.managed_folder_id is not None

    @property
    def is_finished(self) -> bool:
        return self.completed_at is not None


@dataclass(frozen=True)
class TransferItem:
    """A top-level file or folder the bulk transfer moved for a job."""

    record_id: str
    kind: ItemKind
    source_item_id: str | None = None
    skip_reason: str | None = None


@dataclass(frozen=True)
class TransferPermission:
    """A shared item whose collaborators must be downgraded to viewer."""

    record_id: str
    kind: ItemKind
    source_item_id: str | None = None


@dataclass
class DeprovisionTarget:
    """One account being converted to a standalone personal account."""

    user_id: str
    user_login: str
    rounds: int = 0


@dataclass(frozen=True)
class RemovalCandidate:
    """Something the drain loop has to remove from an account.

    For files and folders ``target_id`` is the item id. For collaborations it
    is the collaboration record id and ``item_id`` is the item it anchors on.
    """

    target_id: str
    kind: RemovalKind
    name: str = ""
    item_id: str | None = None


# ---------------------------------------------------------------------------
# Step and phase results
# ---------------------------------------------------------------------------


@dataclass
class StepResult:
    """Uniform result of one executed (and possibly retried) remote step."""

    label: str
    correlation_id: str
    value: Any = None
    fault: RemoteFault | None = None
    attempts: int = 1

    @property
    def success(self) -> bool:
        return self.fault is None

    @property
    def failed(self) -> bool:
        return self.fault is not None


@dataclass
class BootstrapResult:
    """Resolved identifiers for a job plus the audit payload that produced them."""

    job_id: int
    user_id: str
    managed_folder_id: str
    correlation_id: str
    request: str = ""
    response: str = ""


@dataclass
class ItemResult:
    """Outcome of one move or collaboration-update for a job item."""

    job_id: int
    record_id: str
    operation: ItemOperation
    status: ItemStatus
    correlation_id: str
    source_item_id: str | None = None
    detail: str = ""
    request: str = ""
    response: str = ""


@dataclass
class CleanupResult:
    """Outcome of the cleanup phase for a job."""

    job_id: int
    correlation_id: str
    group_deleted: bool = False
    viewer_collaboration_created: bool = False
    request: str = ""
    response: str = ""


@dataclass
class DeprovisionRecord:
    """A completed deprovision phase for an account."""

    user_id: str
    user_login: str
    phase: int
    correlation_id: str
    detail: str = ""


@dataclass
class PhaseFailure:
    """One isolated per-item failure, collected for the phase digest."""

    record_id: str
    fault: RemoteFault
    item_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = self.fault.to_dict()
        data["record_id"] = self.record_id
        data["item_id"] = self.item_id
        return data


@dataclass
class PhaseSummary:
    """Counts for one batch phase plus its isolated failures."""

    phase: str
    succeeded: int = 0
    skipped: int = 0
    failures: list[PhaseFailure] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def total(self) -> int:
        return self.succeeded + self.skipped + self.failed
