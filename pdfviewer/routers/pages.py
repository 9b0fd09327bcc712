"""Per-page content, thumbnail and download endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Path, Query
from fastapi.responses import FileResponse

from ..container import ServiceContainer, get_container
from ..models import PageStatus

router = APIRouter(prefix="/api/documents/{document_hash}/pages", tags=["pages"])


@router.get("")
def list_pages(
    document_hash: str,
    *,
    status_filter: PageStatus | None = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=15, ge=1, le=100),
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    """Return page summaries without their text content."""

    result = container.documents.list_pages(
        document_hash, status=status_filter, page=page, per_page=per_page
    )
    return result.to_dict(lambda record: record.to_dict(include_content=False))


@router.get("/{page_number}")
def get_page(
    document_hash: str,
    page_number: int = Path(..., ge=1),
    *,
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    return {"data": container.documents.get_page(document_hash, page_number)}


@router.get("/{page_number}/thumbnail")
def get_thumbnail(
    document_hash: str,
    page_number: int = Path(..., ge=1),
    *,
    container: ServiceContainer = Depends(get_container),
) -> FileResponse:
    path = container.documents.read_thumbnail(document_hash, page_number)
    return FileResponse(path, media_type="image/jpeg")


@router.get("/{page_number}/download")
def download_page(
    document_hash: str,
    page_number: int = Path(..., ge=1),
    *,
    container: ServiceContainer = Depends(get_container),
) -> FileResponse:
    path = container.documents.read_page_file(document_hash, page_number)
    return FileResponse(
        path,
        media_type="application/pdf",
        filename=f"{document_hash[:12]}-page-{page_number}.pdf",
    )


__all__ = ["router"]
