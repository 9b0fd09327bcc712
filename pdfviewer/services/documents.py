"""Document level operations: upload, lookup, page access, deletion and stats."""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
from pathlib import Path
from typing import Any, Mapping, Tuple

from fastapi import UploadFile

from ..config import Settings
from ..models import DocumentStatus, PageStatus
from ..observability.metrics import MetricsRegistry, metrics_registry
from ..repositories import DocumentRecord, MetadataStore, PageRecord, Paginated
from ..storage import BlobStore, document_blob_path
from ..storage.blob_store import DOCUMENTS_CATEGORY
from ..utils.errors import (
    DocumentNotFound,
    PageNotFound,
    StateConflictError,
    ValidationError,
)
from .cache import CacheService
from .orchestrator import DocumentProcessingOrchestrator
from .page_extraction import PageExtractor
from .search import SearchService

LOGGER = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024  # 1MB


def _secure_filename(filename: str) -> str:
    """Return a filesystem-safe version of the provided filename."""

    if not filename:
        return f"document-{secrets.token_hex(8)}.pdf"
    name = Path(filename).name
    cleaned = re.sub(r"[^A-Za-z0-9._-]", "_", name).strip("._")
    return cleaned or f"document-{secrets.token_hex(8)}.pdf"


async def stage_upload(upload: UploadFile, directory: Path, max_size: int) -> Path:
    """Stream a multipart upload to a temporary file, enforcing ``max_size``."""

    directory.mkdir(parents=True, exist_ok=True)
    temp_path = directory / f"{secrets.token_hex(16)}.tmp"
    total_bytes = 0
    try:
        with temp_path.open("wb") as buffer:
            while True:
                chunk = await upload.read(CHUNK_SIZE)
                if not chunk:
                    break
                total_bytes += len(chunk)
                if total_bytes > max_size:
                    raise ValidationError(
                        "File exceeds maximum allowed size",
                        extra={"max_upload_size": max_size},
                    )
                buffer.write(chunk)
    except Exception:
        temp_path.unlink(missing_ok=True)
        raise
    finally:
        await upload.close()
    return temp_path


class DocumentService:
    """Facade the HTTP layer uses for everything outside the pipeline itself."""

    def __init__(
        self,
        store: MetadataStore,
        blobs: BlobStore,
        orchestrator: DocumentProcessingOrchestrator,
        worker: PageExtractor,
        *,
        settings: Settings,
        search: SearchService | None = None,
        cache: CacheService | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._store = store
        self._blobs = blobs
        self._orchestrator = orchestrator
        self._worker = worker
        self._settings = settings
        self._search = search
        self._cache = cache
        self._metrics = metrics or metrics_registry

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------
    def compute_hash(self, path: Path) -> str:
        """Return the keyed content hash used as the document's public identity."""

        digest = hmac.new(self._settings.hash_salt.encode("utf-8"), digestmod=hashlib.sha256)
        with path.open("rb") as handle:
            for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
                digest.update(chunk)
        return digest.hexdigest()

    def _validate_upload(self, path: Path, filename: str, mime_type: str | None) -> int:
        extension = Path(filename).suffix.lower().lstrip(".")
        if extension not in self._settings.allowed_extensions:
            raise ValidationError(
                "Unsupported file extension",
                extra={"extension": extension, "allowed": list(self._settings.allowed_extensions)},
            )
        if mime_type and mime_type.lower() not in self._settings.allowed_mimetypes:
            raise ValidationError("Unsupported file type", extra={"mime_type": mime_type})
        if not path.is_file():
            raise ValidationError("Uploaded file is missing")
        size = path.stat().st_size
        if size == 0:
            raise ValidationError("Uploaded file is empty")
        if size > self._settings.max_upload_size:
            raise ValidationError(
                "File exceeds maximum allowed size",
                extra={"max_upload_size": self._settings.max_upload_size},
            )
        return size

    def upload(
        self,
        source_path: Path | str,
        original_filename: str,
        *,
        title: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        created_by: str | None = None,
        mime_type: str | None = None,
    ) -> Tuple[DocumentRecord, bool]:
        """Store a file that already sits at ``source_path``.

        Returns the document together with ``True`` when it was created, or
        the existing document and ``False`` for a duplicate upload.
        """

        path = Path(source_path)
        filename = _secure_filename(original_filename)
        size = self._validate_upload(path, filename, mime_type)
        document_hash = self.compute_hash(path)

        existing = self._store.find_document(document_hash)
        if existing is not None:
            LOGGER.info("Duplicate upload of %s ignored", document_hash)
            return existing, False

        blob_path = document_blob_path(document_hash, filename)
        self._blobs.put(blob_path, path.read_bytes())
        try:
            document = self._store.create_document(
                hash=document_hash,
                title=(title or "").strip() or Path(original_filename or filename).stem,
                filename=filename,
                original_filename=original_filename or filename,
                mime_type=(mime_type or "application/pdf").lower(),
                file_path=blob_path,
                file_size=size,
                metadata=dict(metadata or {}),
                created_by=created_by,
            )
        except StateConflictError:
            existing = self._store.find_document(document_hash)
            if existing is None:
                raise
            if existing.file_path != blob_path:
                self._blobs.delete(blob_path)
            return existing, False

        self._metrics.record_pipeline_event("documents_uploaded")
        LOGGER.info("Stored document %s (%s, %d bytes)", document_hash, filename, size)
        return document, True

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    def exists(self, document_hash: str) -> bool:
        return self._store.find_document(document_hash) is not None

    def find_by_hash(self, document_hash: str) -> DocumentRecord:
        document = self._store.find_document(document_hash)
        if document is None:
            raise DocumentNotFound(
                f"Document with hash {document_hash} not found",
                extra={"hash": document_hash},
            )
        return document

    def get_metadata(self, document_hash: str) -> dict[str, Any]:
        if self._cache is not None:
            cached = self._cache.get_cached_document_metadata(document_hash)
            if cached is not None:
                return cached
        payload = self.find_by_hash(document_hash).to_dict()
        if self._cache is not None:
            self._cache.cache_document_metadata(document_hash, payload)
        return payload

    def get_progress(self, document_hash: str) -> dict[str, Any]:
        return self._orchestrator.get_processing_status(document_hash)

    def get_audit_report(self, document_hash: str) -> dict[str, Any]:
        return self._orchestrator.get_audit_report(document_hash)

    def list(
        self, filters: Mapping[str, Any] | None = None, page: int = 1, per_page: int = 15
    ) -> Paginated[DocumentRecord]:
        return self._store.list_documents(filters, page=page, per_page=per_page)

    def update_metadata(
        self,
        document_hash: str,
        *,
        title: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> DocumentRecord:
        document = self.find_by_hash(document_hash)
        fields: dict[str, Any] = {}
        if title is not None and title.strip():
            fields["title"] = title.strip()
        if metadata:
            fields["metadata"] = {**document.metadata, **metadata}
        if not fields:
            return document
        updated = self._store.update_document_fields(document_hash, **fields)
        if updated is None:
            raise DocumentNotFound(
                f"Document with hash {document_hash} not found",
                extra={"hash": document_hash},
            )
        if self._search is not None:
            self._search.refresh_document(updated)
        if self._cache is not None:
            self._cache.invalidate_document_cache(document_hash)
            self._cache.invalidate_search_cache()
        return updated

    def delete(self, document_hash: str) -> bool:
        """Remove the document, its pages, blobs, index entries and cache keys."""

        document = self.find_by_hash(document_hash)
        if document.status == DocumentStatus.PROCESSING:
            self._store.request_cancel(document_hash)

        if self._search is not None:
            self._search.remove_from_index(document_hash)
        removed = self._store.delete_document(document_hash)
        self._worker.cleanup_page_files(document_hash)
        self._blobs.delete_prefix(f"{DOCUMENTS_CATEGORY}/{document_hash}")
        if self._cache is not None:
            self._cache.invalidate_document_cache(document_hash)
        LOGGER.info("Deleted document %s", document_hash)
        return removed

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------
    def list_pages(
        self,
        document_hash: str,
        status: PageStatus | str | None = None,
        page: int = 1,
        per_page: int = 15,
    ) -> Paginated[PageRecord]:
        self.find_by_hash(document_hash)
        page_status = PageStatus(status) if status else None
        return self._store.paginate_pages(
            document_hash, status=page_status, page=page, per_page=per_page
        )

    def _require_page(self, document_hash: str, page_number: int) -> PageRecord:
        self.find_by_hash(document_hash)
        page = self._store.find_page(document_hash, page_number)
        if page is None:
            raise PageNotFound(
                f"Page {page_number} not found",
                extra={"hash": document_hash, "page_number": page_number},
            )
        return page

    def get_page(self, document_hash: str, page_number: int) -> dict[str, Any]:
        if self._cache is not None:
            cached = self._cache.get_cached_page_content(document_hash, page_number)
            if cached is not None:
                return cached
        page = self._require_page(document_hash, page_number)
        payload = page.to_dict()
        if self._cache is not None and page.status == PageStatus.COMPLETED:
            self._cache.cache_page_content(document_hash, page_number, payload)
        return payload

    def _artifact(self, path: str | None, document_hash: str, page_number: int, kind: str) -> Path:
        if not path or not self._blobs.exists(path):
            raise PageNotFound(
                f"{kind.capitalize()} for page {page_number} is not available",
                extra={"hash": document_hash, "page_number": page_number},
            )
        return self._blobs.local_path(path)

    def read_thumbnail(self, document_hash: str, page_number: int) -> Path:
        page = self._require_page(document_hash, page_number)
        return self._artifact(page.thumbnail_path, document_hash, page_number, "thumbnail")

    def read_page_file(self, document_hash: str, page_number: int) -> Path:
        page = self._require_page(document_hash, page_number)
        return self._artifact(page.page_file_path, document_hash, page_number, "page file")

    def read_original(self, document_hash: str) -> Tuple[Path, DocumentRecord]:
        document = self.find_by_hash(document_hash)
        if not self._blobs.exists(document.file_path):
            raise DocumentNotFound(
                "Original file is missing from storage", extra={"hash": document_hash}
            )
        return self._blobs.local_path(document.file_path), document

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def get_stats(self) -> dict[str, Any]:
        counts = self._store.count_documents_by_status()
        runs = self._store.count_runs_by_status()
        return {
            "documents": {
                "total": sum(counts.values()),
                **{status.value: count for status, count in counts.items()},
            },
            "processing_runs": {
                "total": sum(runs.values()),
                **{status.value: count for status, count in runs.items()},
            },
            "search": self._search.get_search_stats() if self._search else None,
            "cache": self._cache.get_cache_stats() if self._cache else None,
            "pipeline": self._metrics.pipeline_snapshot(),
        }

    def health(self) -> dict[str, Any]:
        checks = {
            "database": self._store.ping(),
            "storage": self._blobs.ping(),
            "cache": self._cache.ping() if self._cache else True,
        }
        return {
            "status": "ok" if all(checks.values()) else "degraded",
            "checks": checks,
        }


__all__ = ["DocumentService", "stage_upload"]
