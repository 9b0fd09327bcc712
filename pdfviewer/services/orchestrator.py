"""Drive documents from upload through per-page extraction to a final status.

Every status change is a conditional update on the metadata store, so
duplicate job deliveries and concurrent page callbacks settle on exactly one
outcome. Cancellation is cooperative: page jobs consult the document's
``cancel_requested`` flag before they claim a page and between extraction
steps.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, TypeVar

from ..models import DocumentStatus, PageStatus, RunStatus
from ..observability.metrics import MetricsRegistry, metrics_registry
from ..repositories import DocumentRecord, MetadataStore
from ..storage import BlobStore
from ..utils.errors import (
    DocumentNotFound,
    InvalidDocument,
    InvalidState,
    PdfViewerError,
    PermanentExtractionError,
    TransientIOError,
)
from ..utils.logging import TRACE_LEVEL
from . import pdf_inspect
from .cache import CacheService
from .jobs import JobQueue, PageJob
from .page_extraction import PageExtractor
from .search import SearchService

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_RESUME_BATCH = 100


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class PageResult:
    """Outcome of one page job, reported back to the orchestrator."""

    document_hash: str
    page_number: int
    success: bool
    content: str | None = None
    page_file_path: str | None = None
    thumbnail_path: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    error: str | None = None
    attempts: int = 1
    run: int = 1


class _Cancelled(Exception):
    """Raised inside a page job when its document stops accepting work."""


class DocumentProcessingOrchestrator:
    """State machine and scheduler for document processing."""

    def __init__(
        self,
        store: MetadataStore,
        blobs: BlobStore,
        worker: PageExtractor,
        queue: JobQueue,
        *,
        search: SearchService | None = None,
        cache: CacheService | None = None,
        metrics: MetricsRegistry | None = None,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        backoff_max_seconds: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._blobs = blobs
        self._worker = worker
        self._queue = queue
        self._search = search
        self._cache = cache
        self._metrics = metrics or metrics_registry
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = max(0.0, backoff_seconds)
        self.backoff_max_seconds = max(0.0, backoff_max_seconds)
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Read-only introspection
    # ------------------------------------------------------------------
    def validate_pdf(self, path: Path | str) -> bool:
        return pdf_inspect.validate_pdf(path)

    def get_page_count(self, path: Path | str) -> int:
        return pdf_inspect.get_page_count(path)

    def extract_metadata(self, path: Path | str) -> dict[str, Any]:
        return pdf_inspect.extract_metadata(path)

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)

    def _retrying(self, operation: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call ``operation``, backing off and retrying while the store is unavailable."""

        attempt = 1
        while True:
            try:
                return operation(*args, **kwargs)
            except TransientIOError as exc:
                if attempt >= self.max_attempts:
                    raise
                LOGGER.warning(
                    "Store unavailable (attempt %d/%d): %s", attempt, self.max_attempts, exc
                )
                self._metrics.record_pipeline_event("store_retries")
                delay = self._backoff(attempt)
                if delay > 0:
                    self._sleep(delay)
                attempt += 1

    def _audit(self, operation: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        try:
            self._retrying(operation, *args, **kwargs)
        except PdfViewerError:
            LOGGER.warning("Processing run audit write failed", exc_info=True)

    @staticmethod
    def _current_run(document: DocumentRecord) -> int:
        return int(document.metadata.get("processing_runs", 1))

    def _require(self, document_hash: str) -> DocumentRecord:
        document = self._store.find_document(document_hash)
        if document is None:
            raise DocumentNotFound(
                f"Document with hash {document_hash} not found",
                extra={"hash": document_hash},
            )
        return document

    def get_processing_status(self, document_hash: str) -> dict[str, Any]:
        """Return the best known progress, including partial completion."""

        document = self._require(document_hash)
        counts = self._store.count_pages_by_status(document_hash)
        total = document.page_count or 0
        completed = counts.get(PageStatus.COMPLETED, 0)
        run = self._current_run(document)
        latest = next(
            (record for record in self._store.list_runs(document_hash) if record.run_number == run),
            None,
        )
        return {
            "hash": document.hash,
            "status": document.status.value,
            "progress_percentage": round(completed / total * 100, 2) if total else 0.0,
            "total_pages": total,
            "completed_pages": completed,
            "failed_pages": counts.get(PageStatus.FAILED, 0),
            "pending_pages": counts.get(PageStatus.PENDING, 0),
            "processing_pages": counts.get(PageStatus.PROCESSING, 0),
            "is_searchable": document.is_searchable,
            "cancel_requested": document.cancel_requested,
            "processing_started_at": (
                document.processing_started_at.isoformat()
                if document.processing_started_at
                else None
            ),
            "processing_completed_at": (
                document.processing_completed_at.isoformat()
                if document.processing_completed_at
                else None
            ),
            "processing_error": document.processing_error,
            "current_run": latest.to_dict() if latest is not None else None,
        }

    def get_audit_report(self, document_hash: str) -> dict[str, Any]:
        """Summarise every processing run recorded for a document."""

        document = self._require(document_hash)
        runs = self._store.list_runs(document_hash)
        summary = Counter(run.status.value for run in runs)
        return {
            "document": {
                "hash": document.hash,
                "title": document.title,
                "original_filename": document.original_filename,
                "created_at": document.created_at.isoformat() if document.created_at else None,
            },
            "summary": {
                "total_runs": len(runs),
                **{status.value: summary.get(status.value, 0) for status in RunStatus},
            },
            "runs": [run.to_dict() for run in reversed(runs)],
        }

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def _reject(self, document: DocumentRecord, message: str) -> InvalidDocument:
        self._store.update_document_fields(document.hash, processing_error=message)
        LOGGER.info("Document %s failed validation: %s", document.hash, message)
        return InvalidDocument(message, extra={"hash": document.hash})

    def process(self, document_hash: str) -> DocumentStatus:
        """Validate the file, create pending pages and schedule one job per page."""

        document = self._require(document_hash)
        if document.status in (DocumentStatus.PROCESSING, DocumentStatus.COMPLETED):
            LOGGER.debug("Document %s already %s", document_hash, document.status.value)
            return document.status
        if document.status != DocumentStatus.UPLOADED:
            raise InvalidState(
                f"Cannot process a document in status {document.status.value}",
                extra={"hash": document_hash, "status": document.status.value},
            )

        source = self._blobs.local_path(document.file_path)
        if not self.validate_pdf(source):
            raise self._reject(document, "File is not a readable, unencrypted PDF")
        try:
            page_count = self.get_page_count(source)
            info = self.extract_metadata(source)
        except InvalidDocument as exc:
            raise self._reject(document, exc.message) from exc

        pdf_info = {
            key: value
            for key, value in info.items()
            if value is not None and key not in ("page_count", "file_size")
        }
        if not self._store.begin_processing(document_hash, page_count, {"pdf": pdf_info}):
            current = self._require(document_hash)
            if current.status in (DocumentStatus.PROCESSING, DocumentStatus.COMPLETED):
                return current.status
            raise InvalidState(
                f"Cannot process a document in status {current.status.value}",
                extra={"hash": document_hash, "status": current.status.value},
            )

        LOGGER.info("Processing document %s (%d pages)", document_hash, page_count)
        self._metrics.record_pipeline_event("documents_started")
        self._audit(self._store.start_run, document_hash, 1, "process", page_count)
        self._dispatch(document_hash, range(1, page_count + 1))
        return DocumentStatus.PROCESSING

    def _dispatch(self, document_hash: str, page_numbers: Iterable[int], run: int = 1) -> int:
        count = 0
        for page_number in page_numbers:
            self._queue.enqueue(PageJob(document_hash, page_number, run))
            count += 1
        LOGGER.debug("Enqueued %d page jobs for %s (run %d)", count, document_hash, run)
        return count

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------
    def _accepting_work(self, document_hash: str) -> bool:
        document = self._store.find_document(document_hash)
        return (
            document is not None
            and document.status == DocumentStatus.PROCESSING
            and not document.cancel_requested
        )

    def _checkpoint(self, document_hash: str) -> None:
        LOGGER.log(TRACE_LEVEL, "Checkpoint for %s", document_hash)
        if not self._accepting_work(document_hash):
            raise _Cancelled(document_hash)

    def run_page_job(self, job: PageJob) -> PageResult | None:
        """Claim, extract and record one page. Safe to call for duplicate deliveries.

        Store outages are retried with backoff around every step. When they
        outlast the retry budget the page is still driven to a settled state
        (failed, or released when the document stopped accepting work) so the
        document can finalize.
        """

        claimed = False
        try:
            if not self._retrying(self._accepting_work, job.document_hash):
                LOGGER.debug("Skipping page %s of %s", job.page_number, job.document_hash)
                self._retrying(self._maybe_settle_cancel, job.document_hash)
                return None
            if not self._retrying(
                self._store.transition_page,
                job.document_hash,
                job.page_number,
                (PageStatus.PENDING,),
                PageStatus.PROCESSING,
            ):
                LOGGER.debug(
                    "Page %s of %s already claimed", job.page_number, job.document_hash
                )
                return None
            claimed = True

            try:
                result = self._execute(job)
            except _Cancelled:
                self._retrying(
                    self._store.transition_page,
                    job.document_hash,
                    job.page_number,
                    (PageStatus.PROCESSING,),
                    PageStatus.PENDING,
                )
                self._metrics.record_pipeline_event("pages_cancelled")
                LOGGER.info(
                    "Released page %s of %s after cancellation",
                    job.page_number,
                    job.document_hash,
                )
                self._retrying(self._maybe_settle_cancel, job.document_hash)
                return None

            self.record_page_result(result)
            return result
        except TransientIOError as exc:
            self._abandon(job, claimed, exc)
            return None

    def _abandon(self, job: PageJob, claimed: bool, error: TransientIOError) -> None:
        LOGGER.error(
            "Store still unavailable for page %s of %s after %d attempts: %s",
            job.page_number,
            job.document_hash,
            self.max_attempts,
            error,
        )
        self._metrics.record_pipeline_event("pages_abandoned")
        try:
            if self._retrying(self._accepting_work, job.document_hash):
                failed = self._retrying(
                    self._store.transition_page,
                    job.document_hash,
                    job.page_number,
                    (PageStatus.PROCESSING,) if claimed else (PageStatus.PENDING,),
                    PageStatus.FAILED,
                    processing_error=f"Metadata store unavailable: {error.message}",
                    attempts=self.max_attempts,
                )
                if failed:
                    self._metrics.record_pipeline_event("pages_failed")
                    self._audit(self._store.record_run_page, job.document_hash, job.run, False)
                self._retrying(self.finalize, job.document_hash)
                return
            if claimed:
                self._retrying(
                    self._store.transition_page,
                    job.document_hash,
                    job.page_number,
                    (PageStatus.PROCESSING,),
                    PageStatus.PENDING,
                )
            self._retrying(self._maybe_settle_cancel, job.document_hash)
        except TransientIOError:
            LOGGER.exception(
                "Page %s of %s left for startup recovery", job.page_number, job.document_hash
            )

    def _execute(self, job: PageJob) -> PageResult:
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            self._retrying(self._checkpoint, job.document_hash)
            try:
                return self._attempt(job, attempt)
            except _Cancelled:
                raise
            except Exception as exc:  # noqa: BLE001 - every failure spends one attempt
                last_error = exc
                LOGGER.warning(
                    "Attempt %d/%d failed for page %s of %s: %s",
                    attempt,
                    self.max_attempts,
                    job.page_number,
                    job.document_hash,
                    exc,
                    exc_info=not isinstance(exc, (PermanentExtractionError, TransientIOError)),
                )
                self._retrying(
                    self._store.transition_page,
                    job.document_hash,
                    job.page_number,
                    (PageStatus.PROCESSING,),
                    PageStatus.PROCESSING,
                    attempts=attempt,
                    processing_error=str(exc),
                )
            if attempt < self.max_attempts:
                self._metrics.record_pipeline_event("pages_retried")
                delay = self._backoff(attempt)
                if delay > 0:
                    self._sleep(delay)

        return PageResult(
            document_hash=job.document_hash,
            page_number=job.page_number,
            success=False,
            error=str(last_error) or last_error.__class__.__name__,
            attempts=self.max_attempts,
            run=job.run,
        )

    def _attempt(self, job: PageJob, attempt: int) -> PageResult:
        document = self._store.find_document(job.document_hash)
        if document is None:
            raise _Cancelled(job.document_hash)

        page_path = self._worker.extract_page(document, job.page_number)
        self._checkpoint(job.document_hash)
        if not self._worker.validate_page_file(page_path):
            raise PermanentExtractionError(
                f"Extracted page {job.page_number} failed validation",
                extra={"page_number": job.page_number},
            )
        self._checkpoint(job.document_hash)
        content = self._worker.extract_text(page_path)
        metadata = self._worker.inspect_page(page_path)
        self._checkpoint(job.document_hash)
        thumbnail_path = self._worker.generate_thumbnail(page_path)
        self._checkpoint(job.document_hash)

        return PageResult(
            document_hash=job.document_hash,
            page_number=job.page_number,
            success=True,
            content=content,
            page_file_path=page_path,
            thumbnail_path=thumbnail_path,
            metadata={**metadata, "text_length": len(content)},
            attempts=attempt,
            run=job.run,
        )

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------
    def record_page_result(self, result: PageResult) -> bool:
        """Persist a page outcome, then index, cache and try to finalize."""

        document_hash, page_number = result.document_hash, result.page_number
        if result.success:
            recorded = self._retrying(
                self._store.transition_page,
                document_hash,
                page_number,
                (PageStatus.PROCESSING,),
                PageStatus.COMPLETED,
                content=result.content or "",
                page_file_path=result.page_file_path,
                thumbnail_path=result.thumbnail_path,
                metadata=result.metadata,
                processing_error=None,
                attempts=result.attempts,
                is_parsed=True,
            )
        else:
            recorded = self._retrying(
                self._store.transition_page,
                document_hash,
                page_number,
                (PageStatus.PROCESSING,),
                PageStatus.FAILED,
                processing_error=result.error,
                attempts=result.attempts,
            )
        if not recorded:
            LOGGER.info("Discarding stale result for page %s of %s", page_number, document_hash)
            return False

        self._audit(self._store.record_run_page, document_hash, result.run, result.success)
        if result.success:
            self._metrics.record_pipeline_event("pages_completed")
            self._after_page_completed(result)
        else:
            self._metrics.record_pipeline_event("pages_failed")
            LOGGER.info(
                "Page %s of %s failed after %d attempts: %s",
                page_number,
                document_hash,
                result.attempts,
                result.error,
            )

        self._retrying(self.finalize, document_hash)
        return True

    def _after_page_completed(self, result: PageResult) -> None:
        if self._search is not None:
            try:
                self._search.index_page(
                    result.document_hash, result.page_number, result.content or ""
                )
            except Exception:  # noqa: BLE001
                LOGGER.warning(
                    "Search indexing failed for page %s of %s",
                    result.page_number,
                    result.document_hash,
                    exc_info=True,
                )
        if self._cache is not None:
            try:
                page = self._store.find_page(result.document_hash, result.page_number)
                if page is not None:
                    self._cache.cache_page_content(
                        result.document_hash, result.page_number, page.to_dict()
                    )
            except Exception:  # noqa: BLE001
                LOGGER.warning(
                    "Cache write failed for page %s of %s",
                    result.page_number,
                    result.document_hash,
                    exc_info=True,
                )

    def finalize(self, document_hash: str) -> DocumentStatus | None:
        """Aggregate page outcomes once every page is terminal.

        Returns the new status for the caller whose conditional update won,
        ``None`` for everyone else.
        """

        document = self._store.find_document(document_hash)
        if document is None or document.status != DocumentStatus.PROCESSING:
            return None
        if document.cancel_requested:
            self._maybe_settle_cancel(document_hash)
            return None

        counts = self._store.count_pages_by_status(document_hash)
        if counts.get(PageStatus.PENDING, 0) or counts.get(PageStatus.PROCESSING, 0):
            return None

        failed = [
            page.page_number
            for page in self._store.list_pages(document_hash, statuses=(PageStatus.FAILED,))
        ]
        if failed:
            target = DocumentStatus.FAILED
            error = "Processing failed for pages: " + ", ".join(str(n) for n in failed)
        else:
            target = DocumentStatus.COMPLETED
            error = None

        won = self._store.transition_document(
            document_hash,
            (DocumentStatus.PROCESSING,),
            target,
            cancel_requested=False,
            processing_error=error,
            processing_completed_at=_utcnow(),
        )
        if not won:
            return None

        self._metrics.record_pipeline_event(f"documents_{target.value}")
        self._audit(
            self._store.finish_run, document_hash, self._current_run(document), failure_reason=error
        )
        searchable = self._store.refresh_searchable(document_hash)
        if self._cache is not None:
            self._cache.invalidate_document_cache(document_hash)
            if target == DocumentStatus.COMPLETED:
                self._cache.warm_document_cache(document_hash)
        LOGGER.info(
            "Document %s finalized as %s (searchable=%s)%s",
            document_hash,
            target.value,
            searchable,
            f": {error}" if error else "",
        )
        return target

    # ------------------------------------------------------------------
    # User triggered transitions
    # ------------------------------------------------------------------
    def retry_processing(self, document_hash: str) -> DocumentStatus:
        """Re-run only the failed pages of a failed document."""

        document = self._require(document_hash)
        if document.status != DocumentStatus.FAILED:
            raise InvalidState(
                f"Only failed documents can be retried (status is {document.status.value})",
                extra={"hash": document_hash, "status": document.status.value},
            )

        run = self._current_run(document) + 1
        if not self._store.transition_document(
            document_hash,
            (DocumentStatus.FAILED,),
            DocumentStatus.PROCESSING,
            processing_error=None,
            processing_completed_at=None,
            metadata={**document.metadata, "processing_runs": run},
        ):
            raise InvalidState(
                "Document changed status while scheduling the retry",
                extra={"hash": document_hash},
            )

        page_numbers = self._store.reset_pages(document_hash, (PageStatus.FAILED,))
        self._audit(self._store.start_run, document_hash, run, "retry", len(page_numbers))
        self._store.refresh_searchable(document_hash)
        if self._cache is not None:
            self._cache.invalidate_document_cache(document_hash)
        self._metrics.record_pipeline_event("documents_retried")
        LOGGER.info(
            "Retrying %d failed pages of %s (run %d)", len(page_numbers), document_hash, run
        )
        if page_numbers:
            self._dispatch(document_hash, page_numbers, run)
        else:
            self.finalize(document_hash)
        return DocumentStatus.PROCESSING

    def cancel_processing(self, document_hash: str) -> DocumentStatus:
        """Flag a running document for cancellation and settle it when idle."""

        document = self._require(document_hash)
        if document.status != DocumentStatus.PROCESSING:
            raise InvalidState(
                f"Only processing documents can be cancelled (status is {document.status.value})",
                extra={"hash": document_hash, "status": document.status.value},
            )
        if not self._store.request_cancel(document_hash):
            raise InvalidState(
                "Document finished before it could be cancelled",
                extra={"hash": document_hash},
            )
        LOGGER.info("Cancellation requested for %s", document_hash)
        self._maybe_settle_cancel(document_hash)
        return self._require(document_hash).status

    def _maybe_settle_cancel(self, document_hash: str) -> bool:
        document = self._store.find_document(document_hash)
        if (
            document is None
            or document.status != DocumentStatus.PROCESSING
            or not document.cancel_requested
        ):
            return False
        if self._store.count_pages_by_status(document_hash).get(PageStatus.PROCESSING, 0):
            return False
        settled = self._store.transition_document(
            document_hash,
            (DocumentStatus.PROCESSING,),
            DocumentStatus.CANCELLED,
            cancel_requested=True,
            processing_completed_at=_utcnow(),
        )
        if settled:
            self._metrics.record_pipeline_event("documents_cancelled")
            self._audit(
                self._store.finish_run,
                document_hash,
                self._current_run(document),
                cancelled=True,
                failure_reason="Cancelled by request",
            )
            if self._cache is not None:
                self._cache.invalidate_document_cache(document_hash)
            LOGGER.info("Document %s cancelled", document_hash)
        return settled

    # ------------------------------------------------------------------
    # Startup recovery
    # ------------------------------------------------------------------
    def resume_interrupted(self) -> int:
        """Reschedule work left behind by a previous process; returns documents touched."""

        hashes: list[str] = []
        page = 1
        while True:
            batch = self._store.list_documents(
                {"status": DocumentStatus.PROCESSING.value}, page=page, per_page=_RESUME_BATCH
            )
            hashes.extend(document.hash for document in batch.items)
            if page >= batch.last_page:
                break
            page += 1

        for document_hash in hashes:
            stranded = self._store.reset_pages(document_hash, (PageStatus.PROCESSING,))
            if stranded:
                LOGGER.info(
                    "Returned %d stranded pages of %s to pending", len(stranded), document_hash
                )
            document = self._store.find_document(document_hash)
            if (
                document is None
                or document.status != DocumentStatus.PROCESSING
                or document.cancel_requested
            ):
                self._maybe_settle_cancel(document_hash)
                continue
            pending = [
                record.page_number
                for record in self._store.list_pages(
                    document_hash, statuses=(PageStatus.PENDING,)
                )
            ]
            if pending:
                self._dispatch(document_hash, pending, self._current_run(document))
            else:
                self.finalize(document_hash)
        if hashes:
            LOGGER.info("Resumed %d interrupted documents", len(hashes))
        return len(hashes)


__all__ = ["DocumentProcessingOrchestrator", "PageResult"]
