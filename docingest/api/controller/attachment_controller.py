"""HTTP controller for uploading and managing attachments."""

import logging
import re
from datetime import datetime
from typing import List, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from docingest.ingestion import AttachmentCreateFailed, IngestionCoordinator, StorageWriteFailed
from docingest.models import Attachment, AttachmentStatus, DuplicateConflict, ParseStatus
from docingest.services import AttachmentNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["attachments"])


class AttachmentResponse(BaseModel):
    """Attachment as returned to clients."""

    id: str
    container_id: str
    digest: str
    display_name: str
    notes: str
    tags: List[str]
    created_at: datetime
    updated_at: datetime
    removed_at: Optional[datetime] = None

    @classmethod
    def from_attachment(cls, attachment: Attachment) -> "AttachmentResponse":
        return cls(
            id=attachment.id,
            container_id=attachment.container_id,
            digest=attachment.digest,
            display_name=attachment.display_name,
            notes=attachment.notes,
            tags=list(attachment.tags),
            created_at=attachment.created_at,
            updated_at=attachment.updated_at,
            removed_at=attachment.removed_at,
        )


class IngestResponse(BaseModel):
    """Outcome of a successful upload."""

    attachment: AttachmentResponse
    parse_status: ParseStatus
    is_new_content: bool


class StatusResponse(BaseModel):
    """Parse status for polling clients."""

    attachment_id: str
    digest: str
    parse_status: ParseStatus
    parsed_text: Optional[str] = None

    @classmethod
    def from_status(cls, attachment_status: AttachmentStatus) -> "StatusResponse":
        return cls(
            attachment_id=attachment_status.attachment_id,
            digest=attachment_status.digest,
            parse_status=attachment_status.parse_status,
            parsed_text=attachment_status.parsed_text,
        )


class MetadataUpdate(BaseModel):
    """Partial update of user-editable fields."""

    display_name: Optional[str] = Field(default=None, min_length=1)
    notes: Optional[str] = None
    tags: Optional[List[str]] = None


def get_coordinator(request: Request) -> IngestionCoordinator:
    return request.app.state.coordinator


def _conflict(conflict: DuplicateConflict) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={
            "detail": "File already attached to this container",
            "existing_attachment_id": conflict.existing_attachment_id,
        },
    )


def _not_found(e: AttachmentNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _content_disposition(display_name: str) -> str:
    """Build a Content-Disposition header value for any display name.

    Header values must be latin-1 and single-line, so the plain ``filename``
    carries an ASCII stand-in and ``filename*`` carries the UTF-8 name (RFC 6266).
    """
    fallback = display_name.encode("ascii", "replace").decode("ascii")
    fallback = re.sub(r'[\x00-\x1f\x7f"\\]', "_", fallback).strip() or "download"
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(display_name, safe='')}"


@router.post("/containers/{container_id}/attachments", status_code=status.HTTP_201_CREATED)
async def upload_attachment(
    container_id: str,
    file: UploadFile = File(...),
    file_type: Optional[str] = Form(default=None),
    force_on_duplicate: bool = Form(default=False),
    coordinator: IngestionCoordinator = Depends(get_coordinator),
):
    """Upload a file into a container. Returns 409 if it is already attached there."""
    data = await file.read()
    try:
        result = await coordinator.ingest(
            container_id,
            file.filename or "upload",
            data,
            file_type=file_type or file.content_type,
            force_on_duplicate=force_on_duplicate,
        )
    except (StorageWriteFailed, AttachmentCreateFailed) as e:
        logger.error(f"Upload into {container_id} failed: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)) from e

    if isinstance(result, DuplicateConflict):
        return _conflict(result)

    return IngestResponse(
        attachment=AttachmentResponse.from_attachment(result.attachment),
        parse_status=result.parse_status,
        is_new_content=result.is_new_content,
    )


@router.get("/containers/{container_id}/attachments", response_model=List[AttachmentResponse])
async def list_attachments(
    container_id: str,
    include_removed: bool = False,
    coordinator: IngestionCoordinator = Depends(get_coordinator),
):
    attachments = await coordinator.list_attachments(container_id, include_removed=include_removed)
    return [AttachmentResponse.from_attachment(a) for a in attachments]


@router.get("/containers/{container_id}/attachments/search", response_model=List[AttachmentResponse])
async def search_attachments(
    container_id: str,
    q: str,
    coordinator: IngestionCoordinator = Depends(get_coordinator),
):
    attachments = await coordinator.search_attachments(container_id, q)
    return [AttachmentResponse.from_attachment(a) for a in attachments]


@router.get("/attachments/{attachment_id}/status", response_model=StatusResponse)
async def get_attachment_status(
    attachment_id: str,
    coordinator: IngestionCoordinator = Depends(get_coordinator),
):
    try:
        return StatusResponse.from_status(await coordinator.get_attachment_status(attachment_id))
    except AttachmentNotFoundError as e:
        raise _not_found(e) from e


@router.get("/attachments/{attachment_id}/content")
async def download_attachment(
    attachment_id: str,
    coordinator: IngestionCoordinator = Depends(get_coordinator),
):
    try:
        attachment = await coordinator.get_attachment(attachment_id)
        data = await coordinator.get_attachment_content(attachment_id)
    except AttachmentNotFoundError as e:
        raise _not_found(e) from e
    return Response(
        content=data,
        media_type="application/octet-stream",
        headers={"Content-Disposition": _content_disposition(attachment.display_name)},
    )


@router.patch("/attachments/{attachment_id}", response_model=AttachmentResponse)
async def update_attachment(
    attachment_id: str,
    update: MetadataUpdate,
    coordinator: IngestionCoordinator = Depends(get_coordinator),
):
    try:
        attachment = await coordinator.update_attachment_metadata(
            attachment_id,
            display_name=update.display_name,
            notes=update.notes,
            tags=update.tags,
        )
    except AttachmentNotFoundError as e:
        raise _not_found(e) from e
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e
    return AttachmentResponse.from_attachment(attachment)


@router.delete("/attachments/{attachment_id}", response_model=AttachmentResponse)
async def remove_attachment(
    attachment_id: str,
    coordinator: IngestionCoordinator = Depends(get_coordinator),
):
    try:
        return AttachmentResponse.from_attachment(await coordinator.remove_attachment(attachment_id))
    except AttachmentNotFoundError as e:
        raise _not_found(e) from e


@router.post("/attachments/{attachment_id}/restore")
async def restore_attachment(
    attachment_id: str,
    coordinator: IngestionCoordinator = Depends(get_coordinator),
):
    try:
        result = await coordinator.restore_attachment(attachment_id)
    except AttachmentNotFoundError as e:
        raise _not_found(e) from e

    if isinstance(result, DuplicateConflict):
        return _conflict(result)
    return AttachmentResponse.from_attachment(result)
