"""Operational endpoints for cache maintenance, statistics and health."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..container import ServiceContainer, get_container

router = APIRouter(prefix="/api/utils", tags=["utils"])


@router.post("/cache/clear")
def clear_cache(*, container: ServiceContainer = Depends(get_container)) -> dict[str, Any]:
    """Drop every cached entry; the cache is rebuilt lazily."""

    cleared = container.cache.clear_all_cache()
    container.cache.reset_stats()
    return {"cleared": cleared}


@router.post("/cache/warm/{document_hash}")
def warm_cache(
    document_hash: str,
    *,
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    container.documents.find_by_hash(document_hash)
    return {
        "hash": document_hash,
        "warmed": container.cache.warm_document_cache(document_hash),
    }


@router.get("/stats")
def read_stats(*, container: ServiceContainer = Depends(get_container)) -> dict[str, Any]:
    stats = container.documents.get_stats()
    stats["queue"] = {
        "outstanding": container.queue.outstanding,
        "concurrency": container.queue.concurrency,
    }
    return stats


@router.get("/health")
def read_dependencies_health(
    *, container: ServiceContainer = Depends(get_container)
) -> JSONResponse:
    """Probe the database, blob storage and cache backend."""

    report = container.documents.health()
    status_code = 200 if report["status"] == "ok" else 503
    return JSONResponse(status_code=status_code, content=report)


__all__ = ["router"]
