"""
HTTP surface over the single migration phases.

An external workflow engine can drive a migration one phase at a time by
posting to these endpoints. Each handler runs exactly one phase from
:mod:`box_migrator.core.phases` with the same idempotence as the in-process
workflow, so a caller retrying a request is always safe.
"""

import logging
from typing import Optional

from fastapi import APIRouter, FastAPI, Header, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from box_migrator import __version__
from box_migrator.api.schemas import (
    BootstrapRequest,
    BootstrapResponse,
    CleanupRequest,
    ErrorResponse,
    FolderEntry,
    ListSubfoldersRequest,
    ListSubfoldersResponse,
    MoveItemRequest,
    UpdateCollaborationsRequest,
)
from box_migrator.core import phases
from box_migrator.core.context import WorkflowContext
from box_migrator.core.executor import new_correlation_id
from box_migrator.exceptions import MigratorError, RemoteFault
from box_migrator.utils.logging import log_with_context


def _correlation_id(header_value: Optional[str]) -> str:
    return header_value or new_correlation_id()


def create_app(context: WorkflowContext) -> FastAPI:
    """Build the FastAPI application bound to ``context``."""
    app = FastAPI(title="Box Migrator API", version=__version__)
    api_router = APIRouter(prefix="/api")
    retry = context.config.retry

    @app.exception_handler(RemoteFault)
    async def remote_fault_handler(request: Request, fault: RemoteFault):
        status = fault.status_code if fault.status_code and fault.status_code >= 400 else 500
        log_with_context(
            logging.ERROR,
            f"{request.url.path} failed: {fault}",
            correlation_id=fault.correlation_id,
            fault_kind=fault.kind.value,
            status_code=fault.status_code,
        )
        body = ErrorResponse(
            error=str(fault),
            kind=fault.kind.value,
            label=fault.label,
            correlation_id=fault.correlation_id or "",
            status_code=status,
            response_body=fault.response_body,
        )
        return JSONResponse(status_code=status, content=body.model_dump())

    @app.exception_handler(MigratorError)
    async def migrator_error_handler(request: Request, error: MigratorError):
        log_with_context(logging.ERROR, f"{request.url.path} failed: {error}")
        return JSONResponse(
            status_code=500,
            content={"error": str(error), "kind": type(error).__name__},
        )

    @api_router.api_route("/Ping", methods=["GET", "POST"], response_class=PlainTextResponse)
    def ping():
        return "Pong!"

    @api_router.post("/Bootstrap", response_model=BootstrapResponse)
    def bootstrap(
        body: BootstrapRequest,
        correlation_header: Optional[str] = Header(None, alias="CorrelationID"),
    ):
        cid = _correlation_id(correlation_header)
        log_with_context(
            logging.INFO,
            f"Bootstrap requested for managed user {body.ManagedUserId}",
            correlation_id=cid,
            user_login=body.UserLogin,
        )
        outcome = phases.bootstrap_account(
            context.executor,
            context.clients.admin(),
            context.clients.for_user(body.ManagedUserId),
            body.UserLogin,
            body.ManagedUserId,
            retry.bootstrap_max_attempts,
            cid,
        )
        return BootstrapResponse(
            UserId=outcome.user_id, ManagedFolderId=outcome.managed_folder_id
        )

    @api_router.post("/MoveItem")
    def move_item(
        body: MoveItemRequest,
        correlation_header: Optional[str] = Header(None, alias="CorrelationID"),
    ):
        cid = _correlation_id(correlation_header)
        phases.move_item(
            context.executor,
            context.clients.for_user(body.UserId),
            body.kind,
            body.ItemId,
            body.ManagedFolderId,
            retry.item_max_attempts,
            cid,
            user_id=body.UserId,
        )
        return ""

    @api_router.post("/UpdateCollaborations")
    def update_collaborations(
        body: UpdateCollaborationsRequest,
        correlation_header: Optional[str] = Header(None, alias="CorrelationID"),
    ):
        cid = _correlation_id(correlation_header)
        phases.downgrade_collaborations(
            context.executor,
            context.clients.for_user(body.UserId),
            body.kind,
            body.ItemId,
            body.UserId,
            retry.item_max_attempts,
            cid,
            max_workers=context.max_workers,
            user_id=body.UserId,
            managed_user_id=body.ManagedUserId,
        )
        return ""

    @api_router.post("/Cleanup")
    def cleanup(
        body: CleanupRequest,
        correlation_header: Optional[str] = Header(None, alias="CorrelationID"),
    ):
        cid = _correlation_id(correlation_header)
        phases.cleanup_account(
            context.executor,
            context.clients.admin(),
            context.clients.for_user(body.ManagedUserId),
            body.UserId,
            body.ManagedFolderId,
            retry.bootstrap_max_attempts,
            cid,
        )
        return ""

    @api_router.post("/ListSubfolders", response_model=ListSubfoldersResponse)
    def list_subfolders(
        body: ListSubfoldersRequest,
        correlation_header: Optional[str] = Header(None, alias="CorrelationID"),
    ):
        cid = _correlation_id(correlation_header)
        folders = phases.list_subfolders(
            context.executor,
            context.clients.for_user(body.UserId),
            body.FolderId,
            body.UserId,
            retry.activity_max_attempts,
            cid,
        )
        return ListSubfoldersResponse(
            Folders=[FolderEntry(Id=f.id, Name=f.name) for f in folders]
        )

    app.include_router(api_router)
    return app
