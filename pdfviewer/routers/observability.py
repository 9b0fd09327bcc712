"""Routes that expose request and pipeline metrics."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ..container import ServiceContainer, get_container

router = APIRouter(prefix="/api", tags=["observability"])


@router.get("/metrics")
def read_metrics(
    *, container: ServiceContainer = Depends(get_container)
) -> dict[str, object]:
    """Return request timings together with processing pipeline counters."""

    snapshot = container.metrics.snapshot()
    snapshot["queue"] = {"outstanding": container.queue.outstanding}
    return snapshot


__all__ = ["router"]
