"""Request and response bodies of the HTTP surface.

Field names match the webhook payloads the calling workflow already sends, so
they are PascalCase rather than snake_case.
"""

from typing import List, Literal

from pydantic import BaseModel, Field

from box_migrator.types import ItemKind


class BootstrapRequest(BaseModel):
    UserLogin: str = Field(..., min_length=1)
    ManagedUserId: str = Field(..., min_length=1)


class BootstrapResponse(BaseModel):
    UserId: str
    ManagedFolderId: str


class MoveItemRequest(BaseModel):
    UserId: str = Field(..., min_length=1)
    ItemId: str = Field(..., min_length=1)
    ItemType: Literal["file", "folder"]
    ManagedFolderId: str = Field(..., min_length=1)

    @property
    def kind(self) -> ItemKind:
        return ItemKind(self.ItemType)


class UpdateCollaborationsRequest(BaseModel):
    UserId: str = Field(..., min_length=1)
    ItemId: str = Field(..., min_length=1)
    ItemType: Literal["file", "folder"]
    ManagedUserId: str = Field(..., min_length=1)

    @property
    def kind(self) -> ItemKind:
        return ItemKind(self.ItemType)


class CleanupRequest(BaseModel):
    UserId: str = Field(..., min_length=1)
    ManagedUserId: str = Field(..., min_length=1)
    ManagedFolderId: str = Field(..., min_length=1)


class ListSubfoldersRequest(BaseModel):
    UserId: str = Field(..., min_length=1)
    FolderId: str = Field(..., min_length=1)


class FolderEntry(BaseModel):
    Id: str
    Name: str


class ListSubfoldersResponse(BaseModel):
    Folders: List[FolderEntry]


class ErrorResponse(BaseModel):
    """Body returned when a remote step fails."""

    error: str
    kind: str
    label: str = ""
    correlation_id: str = ""
    status_code: int
    response_body: str = ""
