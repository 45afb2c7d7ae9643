"""Per-kind operations on Box files and folders.

Box exposes separate endpoints for files and folders. Workflows pick an
:class:`ItemOperations` implementation once from the :class:`ItemKind` and call
the same five capabilities on it, instead of comparing type strings at every
call site.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from box_migrator.types import BoxCollaboration, BoxItem, ItemKind

if TYPE_CHECKING:
    from box_migrator.services.box_client import BoxClient


class ItemOperations(ABC):
    """Capabilities the workflows need on a single item."""

    kind: ItemKind

    def __init__(self, client: BoxClient) -> None:
        self._client = client

    @abstractmethod
    def get(self, item_id: str, fields: str = "id,name,parent") -> BoxItem: ...

    @abstractmethod
    def move(self, item_id: str, parent_id: str) -> BoxItem: ...

    @abstractmethod
    def list_collaborations(self, item_id: str) -> list[BoxCollaboration]: ...

    @abstractmethod
    def delete(self, item_id: str) -> None: ...

    @abstractmethod
    def purge(self, item_id: str) -> None: ...

    def get_parent_id(self, item_id: str) -> str | None:
        """Return the id of the folder currently containing the item."""
        parent = self.get(item_id, fields="parent").get("parent") or {}
        return parent.get("id")


class FileOperations(ItemOperations):
    kind = ItemKind.FILE

    def get(self, item_id: str, fields: str = "id,name,parent") -> BoxItem:
        return self._client.get_file(item_id, fields=fields)

    def move(self, item_id: str, parent_id: str) -> BoxItem:
        return self._client.update_file_parent(item_id, parent_id)

    def list_collaborations(self, item_id: str) -> list[BoxCollaboration]:
        return list(self._client.list_file_collaborations(item_id))

    def delete(self, item_id: str) -> None:
        self._client.delete_file(item_id)

    def purge(self, item_id: str) -> None:
        self._client.purge_trashed_file(item_id)


class FolderOperations(ItemOperations):
    kind = ItemKind.FOLDER

    def get(self, item_id: str, fields: str = "id,name,parent") -> BoxItem:
        return self._client.get_folder(item_id, fields=fields)

    def move(self, item_id: str, parent_id: str) -> BoxItem:
        return self._client.update_folder_parent(item_id, parent_id)

    def list_collaborations(self, item_id: str) -> list[BoxCollaboration]:
        return list(self._client.list_folder_collaborations(item_id))

    def delete(self, item_id: str) -> None:
        self._client.delete_folder(item_id, recursive=True)

    def purge(self, item_id: str) -> None:
        self._client.purge_trashed_folder(item_id)


_OPERATIONS: dict[ItemKind, type[ItemOperations]] = {
    ItemKind.FILE: FileOperations,
    ItemKind.FOLDER: FolderOperations,
}


def item_operations(kind: ItemKind | str, client: BoxClient) -> ItemOperations:
    """Return the operations for ``kind`` bound to ``client``.

    Raises:
        ValueError: If ``kind`` is neither ``file`` nor ``folder``
    """
    return _OPERATIONS[ItemKind(kind)](client)
