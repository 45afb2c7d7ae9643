"""
Single migration phases against the Box API.

Each function performs one idempotent phase for one account or item and is
shared by the migration workflow and the HTTP surface. Every remote call goes
through the step executor, so it is logged with the caller's correlation id,
classified on failure and retried according to the call site's ceiling.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Optional

from box_migrator.constants import (
    GROUP_NAME_PREFIX,
    MANAGED_FOLDER_SUFFIX,
    MAX_BOX_ID,
    ROLE_EDITOR,
    ROLE_VIEWER,
    ROOT_FOLDER_ID,
)
from box_migrator.core.executor import StepExecutor
from box_migrator.exceptions import (
    MalformedResponse,
    PermanentFault,
    RemoteFault,
    ResolutionAmbiguous,
)
from box_migrator.services.items import item_operations
from box_migrator.types import BoxCollaboration, BoxUser, ItemKind
from box_migrator.utils.logging import log_with_context

if TYPE_CHECKING:
    from box_migrator.services.box_client import BoxClient


@dataclass
class BootstrapOutcome:
    """Scaffolding resolved or created for one account."""

    user_id: str
    managed_folder_id: str
    group_id: str
    correlation_id: str
    request: str = ""
    response: str = ""


@dataclass
class MoveOutcome:
    item_id: str
    moved: bool
    previous_parent_id: Optional[str] = None
    response: str = ""


@dataclass
class DowngradeOutcome:
    item_id: str
    updated_collaboration_ids: list[str] = field(default_factory=list)

    @property
    def already_satisfied(self) -> bool:
        return not self.updated_collaboration_ids


@dataclass
class CleanupOutcome:
    group_deleted: bool
    viewer_collaboration_created: bool


@dataclass
class Subfolder:
    id: str
    name: str


# ---------------------------------------------------------------------------
# Naming and validation
# ---------------------------------------------------------------------------


def group_name(user_id: str) -> str:
    """Name of the per-user group created during bootstrap."""
    return f"{GROUP_NAME_PREFIX}{user_id}"


def managed_folder_name(user: BoxUser) -> str:
    """Name of the destination folder in the managed account."""
    return f"{user.get('name', '')} ({user.get('login', '')}) {MANAGED_FOLDER_SUFFIX}"


def validate_box_id(value: Any, what: str) -> str:
    """Return ``value`` as a string if it is a positive 64-bit integer id.

    Raises:
        MalformedResponse: For anything else
    """
    text = str(value).strip() if value is not None else ""
    if not text.isdigit() or not 0 < int(text) <= MAX_BOX_ID:
        raise MalformedResponse(f"Expected a numeric {what}, got {value!r}")
    return text


def is_valid_box_id(value: Any) -> bool:
    try:
        validate_box_id(value, "id")
    except MalformedResponse:
        return False
    return True


def audit_payload(payload: Any) -> str:
    return json.dumps(payload, default=str, sort_keys=True)


# ---------------------------------------------------------------------------
# Account resolution
# ---------------------------------------------------------------------------


def resolve_account(
    executor: StepExecutor,
    admin: BoxClient,
    login: str,
    max_attempts: int,
    correlation_id: Optional[str] = None,
) -> BoxUser:
    """Resolve a login to exactly one enterprise user.

    Box's ``filter_term`` is a prefix match, so when several users come back
    the exact (case-insensitive) login match wins.

    Raises:
        ResolutionAmbiguous: When zero or several users match
    """
    users = executor.call(
        "Resolve account by login",
        lambda: admin.find_users_by_login(login),
        max_attempts,
        correlation_id=correlation_id,
        user_login=login,
    )
    matches = list(users)
    if len(matches) > 1:
        exact = [u for u in matches if u.get("login", "").lower() == login.lower()]
        if exact:
            matches = exact
    if len(matches) != 1:
        found = "No Box account" if not matches else "Multiple Box accounts"
        raise ResolutionAmbiguous(
            f"{found} found for login {login}",
            label="Resolve account by login",
            correlation_id=correlation_id,
        )
    user = matches[0]
    log_with_context(
        logging.INFO,
        f"Found single Box account {user.get('id')} for login",
        correlation_id=correlation_id,
        user_login=login,
        user_id=user.get("id"),
    )
    return user


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------


def _find_child_folder(client: BoxClient, parent_id: str, name: str) -> Optional[str]:
    for entry in client.list_folder_items(parent_id, fields="id,type,name"):
        if entry.get("type", "folder") == "folder" and entry.get("name") == name:
            return entry.get("id")
    return None


def _find_group(client: BoxClient, name: str) -> Optional[str]:
    matches = [g for g in client.list_groups(filter_term=name) if g.get("name") == name]
    if len(matches) > 1:
        raise ResolutionAmbiguous(f"Found {len(matches)} groups named {name}")
    return matches[0].get("id") if matches else None


def ensure_managed_folder(
    executor: StepExecutor,
    managed: BoxClient,
    name: str,
    max_attempts: int,
    correlation_id: Optional[str] = None,
    **context: Any,
) -> str:
    """Create the destination folder under the managed root, or find it."""

    def lookup() -> str:
        folder_id = executor.call(
            "Find existing managed folder",
            lambda: _find_child_folder(managed, ROOT_FOLDER_ID, name),
            max_attempts,
            correlation_id=correlation_id,
            **context,
        )
        if folder_id is None:
            raise PermanentFault(
                f"Box reports that a folder named '{name}' exists in the managed "
                "account, but it could not be found",
                label="Find existing managed folder",
                correlation_id=correlation_id,
            )
        return folder_id

    return executor.call(
        "Create managed folder",
        lambda: managed.create_folder(name, ROOT_FOLDER_ID).get("id"),
        max_attempts,
        correlation_id=correlation_id,
        on_conflict=lookup,
        **context,
    )


def ensure_group(
    executor: StepExecutor,
    admin: BoxClient,
    name: str,
    max_attempts: int,
    correlation_id: Optional[str] = None,
    **context: Any,
) -> str:
    """Create the per-user group, or find it when it already exists."""

    def lookup() -> str:
        group_id = executor.call(
            "Find existing group",
            lambda: _find_group(admin, name),
            max_attempts,
            correlation_id=correlation_id,
            **context,
        )
        if group_id is None:
            raise PermanentFault(
                f"Box reports that group '{name}' exists, but it could not be found",
                label="Find existing group",
                correlation_id=correlation_id,
            )
        return group_id

    return executor.call(
        "Create group",
        lambda: admin.create_group(name).get("id"),
        max_attempts,
        correlation_id=correlation_id,
        on_conflict=lookup,
        **context,
    )


def ensure_group_membership(
    executor: StepExecutor,
    admin: BoxClient,
    group_id: str,
    user_id: str,
    max_attempts: int,
    correlation_id: Optional[str] = None,
) -> bool:
    """Add the user to the group unless already a member. Returns True if added."""
    members = executor.call(
        "Fetch group membership",
        lambda: list(admin.list_group_memberships(group_id)),
        max_attempts,
        correlation_id=correlation_id,
        user_id=user_id,
        group_id=group_id,
    )
    if any((m.get("user") or {}).get("id") == user_id for m in members):
        log_with_context(
            logging.INFO,
            f"Migrated user is already in group {group_id}",
            correlation_id=correlation_id,
            user_id=user_id,
        )
        return False
    executor.call(
        "Add user to group",
        lambda: admin.add_group_member(group_id, user_id),
        max_attempts,
        correlation_id=correlation_id,
        on_conflict=lambda: None,
        user_id=user_id,
        group_id=group_id,
    )
    return True


def ensure_folder_collaboration(
    executor: StepExecutor,
    client: BoxClient,
    folder_id: str,
    accessible_by_type: str,
    accessible_by_id: str,
    role: str,
    max_attempts: int,
    correlation_id: Optional[str] = None,
    **context: Any,
) -> bool:
    """Create a collaboration on a folder unless the subject already has one.

    Returns:
        True if a collaboration was created
    """
    existing = executor.call(
        "Fetch folder collaborations",
        lambda: list(client.list_folder_collaborations(folder_id)),
        max_attempts,
        correlation_id=correlation_id,
        managed_folder_id=folder_id,
        **context,
    )
    if any((c.get("accessible_by") or {}).get("id") == accessible_by_id for c in existing):
        log_with_context(
            logging.INFO,
            f"{accessible_by_type.capitalize()} {accessible_by_id} is already a "
            f"collaborator on folder {folder_id}",
            correlation_id=correlation_id,
            managed_folder_id=folder_id,
            **context,
        )
        return False
    executor.call(
        f"Create '{role}' collaboration",
        lambda: client.create_collaboration(
            "folder", folder_id, accessible_by_type, accessible_by_id, role, notify=False
        ),
        max_attempts,
        correlation_id=correlation_id,
        on_conflict=lambda: None,
        managed_folder_id=folder_id,
        **context,
    )
    return True


def bootstrap_account(
    executor: StepExecutor,
    admin: BoxClient,
    managed: BoxClient,
    user_login: str,
    managed_user_id: str,
    max_attempts: int,
    correlation_id: str,
) -> BootstrapOutcome:
    """Create (or find) the destination folder, the group and their wiring.

    Re-running against an account whose folder and group already exist returns
    the same identifiers without creating anything.

    Raises:
        RemoteFault: Any fault; bootstrap has no partially-usable result
        MalformedResponse: When Box hands back a non-numeric identifier
    """
    user = resolve_account(executor, admin, user_login, max_attempts, correlation_id)
    user_id = validate_box_id(user.get("id"), "user id")
    context = {"user_id": user_id, "user_login": user_login}

    folder_name = managed_folder_name(user)
    log_with_context(
        logging.INFO,
        f"Managed folder for migrated user will be '{folder_name}'",
        correlation_id=correlation_id,
        **context,
    )
    managed_folder_id = validate_box_id(
        ensure_managed_folder(
            executor, managed, folder_name, max_attempts, correlation_id, **context
        ),
        "managed folder id",
    )

    group_id = validate_box_id(
        ensure_group(
            executor, admin, group_name(user_id), max_attempts, correlation_id, **context
        ),
        "group id",
    )
    ensure_group_membership(
        executor, admin, group_id, user_id, max_attempts, correlation_id
    )
    # Collaborating through the group avoids notifying the user and does not
    # depend on the user's auto-accept setting
    ensure_folder_collaboration(
        executor,
        managed,
        managed_folder_id,
        "group",
        group_id,
        ROLE_EDITOR,
        max_attempts,
        correlation_id,
        user_id=user_id,
    )

    log_with_context(
        logging.INFO,
        f"Bootstrap complete: managed folder {managed_folder_id}, group {group_id}",
        correlation_id=correlation_id,
        managed_folder_id=managed_folder_id,
        **context,
    )
    return BootstrapOutcome(
        user_id=user_id,
        managed_folder_id=managed_folder_id,
        group_id=group_id,
        correlation_id=correlation_id,
        request=audit_payload({"UserLogin": user_login, "ManagedUserId": managed_user_id}),
        response=audit_payload(
            {
                "UserId": user_id,
                "ManagedFolderId": managed_folder_id,
                "GroupId": group_id,
                "ManagedFolderName": folder_name,
            }
        ),
    )


# ---------------------------------------------------------------------------
# Move
# ---------------------------------------------------------------------------


def move_item(
    executor: StepExecutor,
    user_client: BoxClient,
    kind: ItemKind,
    item_id: str,
    managed_folder_id: str,
    max_attempts: int,
    correlation_id: Optional[str] = None,
    **context: Any,
) -> MoveOutcome:
    """Move an item into the managed folder unless it is already there."""
    ops = item_operations(kind, user_client)
    context = {"item_id": item_id, "item_type": ops.kind.value, **context}

    parent_id = executor.call(
        f"Fetch parent of {ops.kind.value}",
        lambda: ops.get_parent_id(item_id),
        max_attempts,
        correlation_id=correlation_id,
        **context,
    )
    if parent_id == managed_folder_id:
        log_with_context(
            logging.INFO,
            f"Nothing to do: {ops.kind.value} {item_id} is already in managed folder "
            f"{managed_folder_id}",
            correlation_id=correlation_id,
            managed_folder_id=managed_folder_id,
            **context,
        )
        return MoveOutcome(item_id=item_id, moved=False, previous_parent_id=parent_id)

    moved = executor.call(
        f"Move {ops.kind.value} to managed folder",
        lambda: ops.move(item_id, managed_folder_id),
        max_attempts,
        correlation_id=correlation_id,
        managed_folder_id=managed_folder_id,
        **context,
    )
    return MoveOutcome(
        item_id=item_id,
        moved=True,
        previous_parent_id=parent_id,
        response=audit_payload(moved),
    )


# ---------------------------------------------------------------------------
# Collaboration downgrade
# ---------------------------------------------------------------------------


def collaborations_to_downgrade(
    collaborations: Iterable[BoxCollaboration], item_id: str, owner_user_id: str
) -> list[BoxCollaboration]:
    """Collaborations that still need the viewer role.

    Keeps only collaborations anchored directly on ``item_id`` whose role is
    not already viewer and whose subject is not the item owner.
    """
    return [
        c
        for c in collaborations
        if c.get("role") != ROLE_VIEWER
        and (c.get("item") or {}).get("id") == item_id
        and (c.get("accessible_by") or {}).get("id") not in (None, owner_user_id)
    ]


def downgrade_collaborations(
    executor: StepExecutor,
    user_client: BoxClient,
    kind: ItemKind,
    item_id: str,
    owner_user_id: str,
    max_attempts: int,
    correlation_id: Optional[str] = None,
    max_workers: int = 4,
    **context: Any,
) -> DowngradeOutcome:
    """Set every remaining direct collaborator on an item to viewer.

    Updates run concurrently and are all joined before returning.

    Raises:
        RemoteFault: The first failed update, after all updates finished
    """
    ops = item_operations(kind, user_client)
    context = {"item_id": item_id, "item_type": ops.kind.value, **context}

    existing = executor.call(
        f"Fetch {ops.kind.value} collaborations",
        lambda: ops.list_collaborations(item_id),
        max_attempts,
        correlation_id=correlation_id,
        **context,
    )
    targets = collaborations_to_downgrade(existing, item_id, owner_user_id)
    outcome = DowngradeOutcome(item_id=item_id)
    if not targets:
        log_with_context(
            logging.INFO,
            f"Nothing to do: no collaborations on {ops.kind.value} {item_id} need downgrading",
            correlation_id=correlation_id,
            **context,
        )
        return outcome

    def update(collab: BoxCollaboration) -> str:
        collab_id = str(collab.get("id"))
        executor.call(
            "Change collaboration role to viewer",
            lambda: user_client.update_collaboration_role(collab_id, ROLE_VIEWER),
            max_attempts,
            correlation_id=correlation_id,
            collaboration_id=collab_id,
            accessible_by_id=(collab.get("accessible_by") or {}).get("id"),
            **context,
        )
        return collab_id

    first_fault: Optional[RemoteFault] = None
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(targets)))) as pool:
        futures = [pool.submit(update, c) for c in targets]
        for future in as_completed(futures):
            try:
                outcome.updated_collaboration_ids.append(future.result())
            except RemoteFault as fault:
                if first_fault is None:
                    first_fault = fault
    if first_fault is not None:
        raise first_fault
    return outcome


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------


def cleanup_account(
    executor: StepExecutor,
    admin: BoxClient,
    managed: BoxClient,
    user_id: str,
    managed_folder_id: str,
    max_attempts: int,
    correlation_id: Optional[str] = None,
) -> CleanupOutcome:
    """Drop the per-user group and give the user direct viewer access instead."""
    name = group_name(user_id)
    memberships = executor.call(
        "Fetch group memberships for migrated user",
        lambda: list(admin.list_user_memberships(user_id)),
        max_attempts,
        correlation_id=correlation_id,
        user_id=user_id,
    )
    group_ids = [
        (m.get("group") or {}).get("id")
        for m in memberships
        if (m.get("group") or {}).get("name") == name
    ]
    if len(group_ids) > 1:
        raise ResolutionAmbiguous(
            f"User {user_id} belongs to {len(group_ids)} groups named {name}",
            label="Fetch group memberships for migrated user",
            correlation_id=correlation_id,
        )

    group_deleted = False
    if group_ids:
        group_id = str(group_ids[0])
        log_with_context(
            logging.INFO,
            f"Removing group {name} ({group_id})",
            correlation_id=correlation_id,
            user_id=user_id,
        )
        executor.call(
            "Delete group",
            lambda: admin.delete_group(group_id),
            max_attempts,
            correlation_id=correlation_id,
            user_id=user_id,
            group_id=group_id,
        )
        group_deleted = True
    else:
        log_with_context(
            logging.INFO,
            f"Migrated user is not a member of group {name}",
            correlation_id=correlation_id,
            user_id=user_id,
        )

    created = ensure_folder_collaboration(
        executor,
        managed,
        managed_folder_id,
        "user",
        user_id,
        ROLE_VIEWER,
        max_attempts,
        correlation_id,
        user_id=user_id,
    )
    return CleanupOutcome(group_deleted=group_deleted, viewer_collaboration_created=created)


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


def list_subfolders(
    executor: StepExecutor,
    user_client: BoxClient,
    folder_id: str,
    user_id: str,
    max_attempts: int,
    correlation_id: Optional[str] = None,
) -> list[Subfolder]:
    """Folders directly inside ``folder_id`` owned by the user, sorted by name."""
    entries = executor.call(
        "List folder items",
        lambda: list(user_client.list_folder_items(folder_id, fields="id,type,name,owned_by")),
        max_attempts,
        correlation_id=correlation_id,
        user_id=user_id,
        folder_id=folder_id,
    )
    folders = [
        Subfolder(id=str(e.get("id")), name=e.get("name", ""))
        for e in entries
        if e.get("type") == "folder" and (e.get("owned_by") or {}).get("id") == user_id
    ]
    return sorted(folders, key=lambda f: f.name)
