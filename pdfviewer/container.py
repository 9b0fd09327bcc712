"""Construct the service graph from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.engine import Engine

from .config import Settings
from .database import get_engine
from .observability.metrics import MetricsRegistry, metrics_registry
from .repositories import MetadataStore, SqlMetadataStore
from .services.cache import CacheService
from .services.documents import DocumentService
from .services.jobs import InProcessJobQueue
from .services.orchestrator import DocumentProcessingOrchestrator
from .services.page_extraction import PageExtractionWorker, PageExtractor
from .services.search import SearchService
from .storage import BlobStore, LocalBlobStore

LOGGER = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Concrete collaborators wired together by constructor injection."""

    settings: Settings
    store: MetadataStore
    blobs: BlobStore
    cache: CacheService
    search: SearchService
    worker: PageExtractor
    queue: InProcessJobQueue
    orchestrator: DocumentProcessingOrchestrator
    documents: DocumentService
    metrics: MetricsRegistry

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        engine: Engine | None = None,
        worker: PageExtractor | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> "ServiceContainer":
        metrics = metrics or metrics_registry
        store = SqlMetadataStore(engine or get_engine())
        blobs = LocalBlobStore(settings.storage_dir)
        cache = CacheService.from_settings(settings, store=store)
        search = SearchService(
            store,
            cache=cache,
            min_query_length=settings.search_min_query_length,
            max_query_length=settings.search_max_query_length,
            per_page=settings.search_results_per_page,
            snippet_length=settings.search_snippet_length,
            highlight_tag=settings.search_highlight_tag,
        )
        worker = worker or PageExtractionWorker(
            blobs,
            thumbnail_width=settings.thumbnail_width,
            thumbnail_height=settings.thumbnail_height,
            thumbnail_quality=settings.thumbnail_quality,
        )
        queue = InProcessJobQueue(
            concurrency=settings.worker_concurrency,
            capacity=settings.queue_capacity,
        )
        orchestrator = DocumentProcessingOrchestrator(
            store,
            blobs,
            worker,
            queue,
            search=search,
            cache=cache,
            metrics=metrics,
            max_attempts=settings.page_max_attempts,
            backoff_seconds=settings.retry_backoff_seconds,
            backoff_max_seconds=settings.retry_backoff_max_seconds,
        )
        queue.bind(orchestrator.run_page_job)
        documents = DocumentService(
            store,
            blobs,
            orchestrator,
            worker,
            settings=settings,
            search=search,
            cache=cache,
            metrics=metrics,
        )
        return cls(
            settings=settings,
            store=store,
            blobs=blobs,
            cache=cache,
            search=search,
            worker=worker,
            queue=queue,
            orchestrator=orchestrator,
            documents=documents,
            metrics=metrics,
        )

    def start(self) -> None:
        """Rebuild the search index and pick up work interrupted by a restart."""

        self.search.rebuild_index()
        if self.settings.resume_on_startup:
            self.orchestrator.resume_interrupted()

    def shutdown(self, wait: bool = True) -> None:
        LOGGER.info("Stopping page workers")
        self.queue.shutdown(wait=wait)


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency returning the container built during startup."""

    return request.app.state.container


__all__ = ["ServiceContainer", "get_container"]
