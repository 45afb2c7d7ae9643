"""Unit test configuration and shared fixtures."""

from __future__ import annotations

import itertools
import json
import threading
from typing import Any, Optional
from unittest.mock import MagicMock

import pytest

from box_migrator.core.config import MigratorConfig
from box_migrator.core.context import WorkflowContext
from box_migrator.core.executor import StepExecutor
from box_migrator.core.retry import RetryPolicy
from box_migrator.exceptions import BoxAPIError
from box_migrator.services.notifications import LoggingNotifier
from box_migrator.store.memory import InMemoryJobStore
from box_migrator.types import ItemKind, MigrationJob, TransferItem, TransferPermission

# ---------------------------------------------------------------------------
# In-memory Box enterprise
# ---------------------------------------------------------------------------


def _conflict(what: str) -> BoxAPIError:
    return BoxAPIError(
        409, json.dumps({"code": "item_name_in_use", "message": what}), "POST", "fake"
    )


def _not_found(what: str) -> BoxAPIError:
    return BoxAPIError(404, json.dumps({"code": "not_found", "message": what}), "GET", "fake")


class FakeBox:
    """Shared state of a small Box enterprise.

    Every client handed out by :meth:`client` sees the same users, items,
    groups and collaborations. Folder ``"0"`` is the root of whichever
    account the client acts as. Mutating calls are recorded in ``mutations``
    as ``(method, subject_id, args)`` tuples.
    """

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self._ids = itertools.count(5000)
        self.users: dict[str, dict[str, Any]] = {}
        self.items: dict[str, dict[str, Any]] = {}
        self.trash: dict[str, dict[str, Any]] = {}
        self.groups: dict[str, dict[str, Any]] = {}
        self.memberships: list[dict[str, Any]] = []
        self.collaborations: dict[str, dict[str, Any]] = {}
        self.mutations: list[tuple[str, str, tuple]] = []
        # method name -> list of exceptions raised on successive calls
        self.failures: dict[str, list[Exception]] = {}

    def next_id(self) -> str:
        return str(next(self._ids))

    # -- Seeding helpers ------------------------------------------------------

    def add_user(self, user_id: str, login: str, name: str = "", status: str = "active"):
        self.users[user_id] = {
            "type": "user",
            "id": user_id,
            "login": login,
            "name": name or login.split("@")[0].title(),
            "status": status,
        }
        return self.users[user_id]

    def add_item(
        self,
        kind: str,
        owner_id: str,
        name: str,
        parent_id: str = "0",
        root_of: Optional[str] = None,
        item_id: Optional[str] = None,
        externally_owned: bool = False,
    ) -> dict[str, Any]:
        item_id = item_id or self.next_id()
        self.items[item_id] = {
            "type": kind,
            "id": item_id,
            "name": name,
            "owned_by": {"type": "user", "id": owner_id},
            "parent": {"type": "folder", "id": parent_id},
            "is_externally_owned": externally_owned,
            "_root": root_of or owner_id,
        }
        return self.items[item_id]

    def add_collaboration(
        self,
        item_id: str,
        accessible_by_id: str,
        role: str = "editor",
        accessible_by_type: str = "user",
    ) -> dict[str, Any]:
        collab_id = self.next_id()
        item = self.items[item_id]
        self.collaborations[collab_id] = {
            "type": "collaboration",
            "id": collab_id,
            "role": role,
            "status": "accepted",
            "item": {"type": item["type"], "id": item_id, "name": item["name"]},
            "accessible_by": {"type": accessible_by_type, "id": accessible_by_id},
        }
        return self.collaborations[collab_id]

    def fail(self, method: str, *errors: Exception) -> None:
        """Make the next calls of ``method`` raise ``errors`` in order."""
        self.failures.setdefault(method, []).extend(errors)

    def client(self, subject_id: str) -> FakeBoxClient:
        return FakeBoxClient(self, subject_id)

    def mutation_count(self, method: Optional[str] = None) -> int:
        return sum(1 for m in self.mutations if method is None or m[0] == method)


class FakeBoxClient:
    """Implements the subset of ``BoxClient`` the workflows call."""

    def __init__(self, box: FakeBox, subject_id: str) -> None:
        self.box = box
        self.subject_id = subject_id

    def _check(self, method: str) -> None:
        pending = self.box.failures.get(method)
        if pending:
            raise pending.pop(0)

    def _mutate(self, method: str, *args: Any) -> None:
        self._check(method)
        self.box.mutations.append((method, self.subject_id, args))

    def _in_folder(self, folder_id: str) -> list[dict[str, Any]]:
        if folder_id == "0":
            return [
                i
                for i in self.box.items.values()
                if i["parent"]["id"] == "0" and i["_root"] == self.subject_id
            ]
        return [i for i in self.box.items.values() if i["parent"]["id"] == folder_id]

    @staticmethod
    def _public(item: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in item.items() if not k.startswith("_")}

    # -- Users ----------------------------------------------------------------

    def find_users_by_login(self, login: str):
        self._check("find_users_by_login")
        return [dict(u) for u in self.box.users.values() if u["login"].startswith(login)]

    def get_user(self, user_id: str, fields: str = ""):
        self._check("get_user")
        return dict(self.box.users[user_id])

    def update_user(self, user_id: str, **changes: Any):
        with self.box.lock:
            self._mutate("update_user", user_id, tuple(sorted(changes.items())))
            self.box.users[user_id].update(changes)
            return dict(self.box.users[user_id])

    def detach_from_enterprise(self, user_id: str, notify: bool = True):
        with self.box.lock:
            self._mutate("detach_from_enterprise", user_id)
            self.box.users[user_id]["enterprise"] = None
            return dict(self.box.users[user_id])

    # -- Folders and files ----------------------------------------------------

    def create_folder(self, name: str, parent_id: str):
        with self.box.lock:
            self._check("create_folder")
            if any(i["name"] == name for i in self._in_folder(parent_id)):
                raise _conflict(f"folder {name} exists")
            self.box.mutations.append(("create_folder", self.subject_id, (name, parent_id)))
            item = self.box.add_item(
                "folder", self.subject_id, name, parent_id, root_of=self.subject_id
            )
            return self._public(item)

    def list_folder_items(self, folder_id: str, fields: str = ""):
        self._check("list_folder_items")
        with self.box.lock:
            return iter([self._public(i) for i in self._in_folder(folder_id)])

    def _get(self, kind: str, item_id: str):
        item = self.box.items.get(item_id)
        if item is None or item["type"] != kind:
            raise _not_found(f"{kind} {item_id}")
        return self._public(item)

    def get_file(self, file_id: str, fields: str = ""):
        self._check("get_file")
        return self._get("file", file_id)

    def get_folder(self, folder_id: str, fields: str = ""):
        self._check("get_folder")
        return self._get("folder", folder_id)

    def _move(self, method: str, kind: str, item_id: str, parent_id: str):
        with self.box.lock:
            self._get(kind, item_id)
            self._mutate(method, item_id, parent_id)
            self.box.items[item_id]["parent"] = {"type": "folder", "id": parent_id}
            return self._public(self.box.items[item_id])

    def update_file_parent(self, file_id: str, parent_id: str):
        return self._move("update_file_parent", "file", file_id, parent_id)

    def update_folder_parent(self, folder_id: str, parent_id: str):
        return self._move("update_folder_parent", "folder", folder_id, parent_id)

    def _delete(self, method: str, kind: str, item_id: str) -> None:
        with self.box.lock:
            self._get(kind, item_id)
            self._mutate(method, item_id)
            self.box.trash[item_id] = self.box.items.pop(item_id)

    def delete_file(self, file_id: str) -> None:
        self._delete("delete_file", "file", file_id)

    def delete_folder(self, folder_id: str, recursive: bool = True) -> None:
        self._delete("delete_folder", "folder", folder_id)

    def _purge(self, method: str, item_id: str) -> None:
        with self.box.lock:
            if item_id not in self.box.trash:
                raise _not_found(f"trashed item {item_id}")
            self._mutate(method, item_id)
            del self.box.trash[item_id]

    def purge_trashed_file(self, file_id: str) -> None:
        self._purge("purge_trashed_file", file_id)

    def purge_trashed_folder(self, folder_id: str) -> None:
        self._purge("purge_trashed_folder", folder_id)

    def list_trashed_items(self, fields: str = ""):
        self._check("list_trashed_items")
        with self.box.lock:
            return iter([self._public(i) for i in self.box.trash.values()])

    # -- Groups ---------------------------------------------------------------

    def create_group(self, name: str):
        with self.box.lock:
            self._check("create_group")
            if any(g["name"] == name for g in self.box.groups.values()):
                raise _conflict(f"group {name} exists")
            self.box.mutations.append(("create_group", self.subject_id, (name,)))
            group_id = self.box.next_id()
            self.box.groups[group_id] = {"type": "group", "id": group_id, "name": name}
            return dict(self.box.groups[group_id])

    def list_groups(self, filter_term: Optional[str] = None):
        self._check("list_groups")
        return iter(
            [
                dict(g)
                for g in self.box.groups.values()
                if not filter_term or g["name"].startswith(filter_term)
            ]
        )

    def delete_group(self, group_id: str) -> None:
        with self.box.lock:
            self._mutate("delete_group", group_id)
            self.box.groups.pop(group_id)
            self.box.memberships = [
                m for m in self.box.memberships if m["group"]["id"] != group_id
            ]
            self.box.collaborations = {
                cid: c
                for cid, c in self.box.collaborations.items()
                if c["accessible_by"]["id"] != group_id
            }

    def list_group_memberships(self, group_id: str):
        self._check("list_group_memberships")
        return iter([m for m in self.box.memberships if m["group"]["id"] == group_id])

    def list_user_memberships(self, user_id: str):
        self._check("list_user_memberships")
        return iter([m for m in self.box.memberships if m["user"]["id"] == user_id])

    def add_group_member(self, group_id: str, user_id: str):
        with self.box.lock:
            self._mutate("add_group_member", group_id, user_id)
            membership = {
                "type": "group_membership",
                "id": self.box.next_id(),
                "user": {"type": "user", "id": user_id},
                "group": dict(self.box.groups[group_id]),
                "role": "member",
            }
            self.box.memberships.append(membership)
            return membership

    # -- Collaborations -------------------------------------------------------

    def _collaborations_on(self, item_id: str):
        return [dict(c) for c in self.box.collaborations.values() if c["item"]["id"] == item_id]

    def list_file_collaborations(self, file_id: str):
        self._check("list_file_collaborations")
        return iter(self._collaborations_on(file_id))

    def list_folder_collaborations(self, folder_id: str):
        self._check("list_folder_collaborations")
        return iter(self._collaborations_on(folder_id))

    def create_collaboration(
        self,
        item_type: str,
        item_id: str,
        accessible_by_type: str,
        accessible_by_id: str,
        role: str,
        notify: bool = False,
    ):
        with self.box.lock:
            self._mutate("create_collaboration", item_id, accessible_by_id, role)
            return dict(
                self.box.add_collaboration(item_id, accessible_by_id, role, accessible_by_type)
            )

    def update_collaboration_role(self, collaboration_id: str, role: str):
        with self.box.lock:
            self._mutate("update_collaboration_role", collaboration_id, role)
            self.box.collaborations[collaboration_id]["role"] = role
            return dict(self.box.collaborations[collaboration_id])

    def remove_collaboration(self, collaboration_id: str) -> None:
        with self.box.lock:
            self._mutate("remove_collaboration", collaboration_id)
            self.box.collaborations.pop(collaboration_id)


class FakeClientFactory:
    """Hands out clients on a :class:`FakeBox`; ``admin()`` acts as ``"admin"``."""

    def __init__(self, box: FakeBox) -> None:
        self.box = box
        self.requested: list[str] = []

    def admin(self) -> FakeBoxClient:
        self.requested.append("admin")
        return self.box.client("admin")

    def for_user(self, user_id: str) -> FakeBoxClient:
        self.requested.append(user_id)
        return self.box.client(user_id)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


MANAGED_USER_ID = "9000"


@pytest.fixture()
def fake_box():
    """A small enterprise with the managed account and one departing user."""
    box = FakeBox()
    box.add_user(MANAGED_USER_ID, "archive@example.edu", "Archive")
    box.add_user("1001", "alice@example.edu", "Alice Smith")
    return box


@pytest.fixture()
def sleeps():
    """Collects the backoff intervals the retry policy asked for."""
    return []


@pytest.fixture()
def executor(sleeps):
    """Step executor whose retry policy records sleeps instead of sleeping."""
    return StepExecutor(RetryPolicy(sleep=sleeps.append))


@pytest.fixture()
def memory_store():
    return InMemoryJobStore()


def _build_config(**overrides: Any) -> MigratorConfig:
    config = MigratorConfig.from_dict(
        {
            "box": {
                "client_id": "cid",
                "client_secret": "secret",
                "enterprise_id": "555",
                "managed_user_id": MANAGED_USER_ID,
            },
            "max_workers": 4,
            "show_progress": False,
            "notifications": {
                "from_address": "noreply@example.edu",
                "operator_addresses": ["ops@example.edu"],
            },
        }
    )
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


@pytest.fixture()
def make_config():
    """Factory fixture building a valid MigratorConfig with overrides."""
    return _build_config


@pytest.fixture()
def make_context(fake_box, memory_store, executor):
    """Factory fixture for a WorkflowContext over the fake enterprise.

    Usage in tests::

        def test_something(make_context):
            ctx = make_context(max_workers=1)
            ctx.notifier.sent  # emails the run tried to send
    """

    def _make(config: Optional[MigratorConfig] = None, **overrides: Any) -> WorkflowContext:
        return WorkflowContext(
            config=config or _build_config(**overrides),
            store=memory_store,
            clients=FakeClientFactory(fake_box),
            notifier=LoggingNotifier(),
            executor=executor,
        )

    return _make


@pytest.fixture()
def mock_box_client():
    """A MagicMock standing in for a BoxClient."""
    client = MagicMock()
    client.subject_id = "1001"
    return client


# ---------------------------------------------------------------------------
# Data builders
# ---------------------------------------------------------------------------


def make_job(job_id: int = 1, **overrides: Any) -> MigrationJob:
    """Build a MigrationJob for alice with the fake managed account."""
    fields: dict[str, Any] = {
        "job_id": job_id,
        "user_login": "alice@example.edu",
        "managed_user_id": MANAGED_USER_ID,
    }
    fields.update(overrides)
    return MigrationJob(**fields)


def make_transfer_item(
    record_id: str, source_item_id: Optional[str], kind: ItemKind = ItemKind.FILE, **kw: Any
) -> TransferItem:
    return TransferItem(record_id=record_id, kind=kind, source_item_id=source_item_id, **kw)


def make_transfer_permission(
    record_id: str, source_item_id: Optional[str], kind: ItemKind = ItemKind.FOLDER
) -> TransferPermission:
    return TransferPermission(record_id=record_id, kind=kind, source_item_id=source_item_id)


@pytest.fixture()
def builders():
    """Expose the data builders to tests that cannot import conftest."""

    class _Builders:
        job = staticmethod(make_job)
        item = staticmethod(make_transfer_item)
        permission = staticmethod(make_transfer_permission)

    return _Builders
