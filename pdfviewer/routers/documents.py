"""Document upload, lifecycle and download endpoints."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field

from ..container import ServiceContainer, get_container
from ..models import DocumentStatus
from ..services.documents import stage_upload
from ..utils.errors import ValidationError

router = APIRouter(prefix="/api", tags=["documents"])


class DocumentUpdateRequest(BaseModel):
    """Editable document attributes."""

    title: str | None = Field(default=None, max_length=255)
    metadata: dict[str, Any] | None = None


class ProcessingStateResponse(BaseModel):
    """Status returned by lifecycle actions."""

    hash: str
    status: DocumentStatus


def _parse_metadata(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError("metadata must be a JSON object") from exc
    if not isinstance(value, dict):
        raise ValidationError("metadata must be a JSON object")
    return value


@router.get("/documents")
def list_documents(
    *,
    status_filter: DocumentStatus | None = Query(default=None, alias="status"),
    search: str | None = Query(default=None, max_length=255),
    created_by: str | None = None,
    is_searchable: bool | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=15, ge=1, le=100),
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    """Return a page of documents, newest first."""

    filters = {
        "status": status_filter.value if status_filter else None,
        "search": search,
        "created_by": created_by,
        "is_searchable": is_searchable,
        "date_from": date_from,
        "date_to": date_to,
    }
    result = container.documents.list(filters, page=page, per_page=per_page)
    return result.to_dict(lambda document: document.to_dict())


@router.post("/documents", status_code=status.HTTP_201_CREATED)
async def upload_document(
    *,
    response: Response,
    file: UploadFile = File(...),
    title: str | None = Form(default=None),
    metadata: str | None = Form(default=None),
    created_by: str | None = Form(default=None),
    process: bool = Form(default=False),
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    """Store an uploaded PDF; duplicates return the existing document."""

    extra = _parse_metadata(metadata)
    temp_path = await stage_upload(
        file,
        container.settings.storage_dir / "_incoming",
        container.settings.max_upload_size,
    )
    try:
        document, created = await run_in_threadpool(
            container.documents.upload,
            temp_path,
            file.filename or "",
            title=title,
            metadata=extra,
            created_by=created_by,
            mime_type=file.content_type,
        )
    finally:
        temp_path.unlink(missing_ok=True)

    if process and document.status == DocumentStatus.UPLOADED:
        await run_in_threadpool(container.orchestrator.process, document.hash)
        document = container.documents.find_by_hash(document.hash)
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return {"data": document.to_dict(), "created": created}


@router.get("/documents/{document_hash}")
def get_document(
    document_hash: str,
    *,
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    return {"data": container.documents.get_metadata(document_hash)}


@router.patch("/documents/{document_hash}")
def update_document(
    document_hash: str,
    payload: DocumentUpdateRequest,
    *,
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    document = container.documents.update_metadata(
        document_hash, title=payload.title, metadata=payload.metadata
    )
    return {"data": document.to_dict()}


@router.delete("/documents/{document_hash}", status_code=status.HTTP_204_NO_CONTENT)
def delete_document(
    document_hash: str,
    *,
    container: ServiceContainer = Depends(get_container),
) -> Response:
    """Delete a document together with its pages and stored files."""

    container.documents.delete(document_hash)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/documents/{document_hash}/download-original")
def download_original(
    document_hash: str,
    *,
    container: ServiceContainer = Depends(get_container),
) -> FileResponse:
    path, document = container.documents.read_original(document_hash)
    return FileResponse(
        path, media_type=document.mime_type, filename=document.original_filename
    )


@router.post(
    "/documents/{document_hash}/process",
    response_model=ProcessingStateResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def process_document(
    document_hash: str,
    *,
    container: ServiceContainer = Depends(get_container),
) -> ProcessingStateResponse:
    """Validate the PDF and schedule page extraction."""

    state = container.orchestrator.process(document_hash)
    return ProcessingStateResponse(hash=document_hash, status=state)


@router.get("/documents/{document_hash}/progress")
def get_progress(
    document_hash: str,
    *,
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    return {"data": container.documents.get_progress(document_hash)}


@router.get("/documents/{document_hash}/audit")
def get_audit_report(
    document_hash: str,
    *,
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    """Processing runs recorded for the document, newest first."""

    return {"data": container.documents.get_audit_report(document_hash)}


@router.post(
    "/documents/{document_hash}/retry",
    response_model=ProcessingStateResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def retry_document(
    document_hash: str,
    *,
    container: ServiceContainer = Depends(get_container),
) -> ProcessingStateResponse:
    """Re-run the failed pages of a failed document."""

    state = container.orchestrator.retry_processing(document_hash)
    return ProcessingStateResponse(hash=document_hash, status=state)


@router.post("/documents/{document_hash}/cancel", response_model=ProcessingStateResponse)
def cancel_document(
    document_hash: str,
    *,
    container: ServiceContainer = Depends(get_container),
) -> ProcessingStateResponse:
    state = container.orchestrator.cancel_processing(document_hash)
    return ProcessingStateResponse(hash=document_hash, status=state)


__all__ = ["router", "DocumentUpdateRequest", "ProcessingStateResponse"]
