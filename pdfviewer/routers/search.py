"""Full text search endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ..container import ServiceContainer, get_container

router = APIRouter(prefix="/api/search", tags=["search"])


class PageMatch(BaseModel):
    """A page ranked against the query."""

    document_hash: str
    page_number: int
    relevance_score: float
    snippet: str
    highlighted_snippet: str


class DocumentMatch(BaseModel):
    """A document ranked by its best page or its title and metadata."""

    document_hash: str
    title: str
    relevance_score: float
    title_match: bool
    matching_pages: int
    pages: list[PageMatch] = Field(default_factory=list)


class PaginationMeta(BaseModel):
    current_page: int
    per_page: int
    total: int
    last_page: int


class DocumentSearchResponse(BaseModel):
    query: str
    data: list[DocumentMatch] = Field(default_factory=list)
    meta: PaginationMeta


class PageSearchResponse(BaseModel):
    query: str
    document_hash: str
    data: list[PageMatch] = Field(default_factory=list)
    meta: PaginationMeta


class SuggestionsResponse(BaseModel):
    query: str
    suggestions: list[str] = Field(default_factory=list)


@router.get("", response_model=DocumentSearchResponse)
def search_documents(
    *,
    q: str = Query(..., max_length=1000),
    created_by: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int = Query(default=1, ge=1),
    per_page: int | None = Query(default=None, ge=1, le=100),
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    """Return documents ranked by relevance to ``q``."""

    filters = {
        "created_by": created_by,
        "date_from": date_from.isoformat() if date_from else None,
        "date_to": date_to.isoformat() if date_to else None,
    }
    return container.search.search_documents(q, filters, page=page, per_page=per_page)


@router.get("/documents/{document_hash}", response_model=PageSearchResponse)
def search_document_pages(
    document_hash: str,
    *,
    q: str = Query(..., max_length=1000),
    page: int = Query(default=1, ge=1),
    per_page: int | None = Query(default=None, ge=1, le=100),
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    """Return the pages of one document ranked by relevance to ``q``."""

    results = container.search.search_pages(document_hash, q, page=page, per_page=per_page)
    return {"document_hash": document_hash, **results}


@router.get("/suggestions", response_model=SuggestionsResponse)
def search_suggestions(
    *,
    q: str = Query(..., max_length=255),
    limit: int = Query(default=10, ge=1, le=50),
    container: ServiceContainer = Depends(get_container),
) -> SuggestionsResponse:
    return SuggestionsResponse(query=q, suggestions=container.search.get_suggestions(q, limit))


__all__ = ["router"]
