"""Value snapshots and the metadata store contract used by the pipeline."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Generic, Iterable, Mapping, Protocol, Sequence, TypeVar

from ..models import Document, DocumentPage, DocumentStatus, PageStatus, ProcessingRun, RunStatus

T = TypeVar("T")


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True, slots=True)
class DocumentRecord:
    """Immutable view of a persisted document."""

    id: int
    hash: str
    title: str
    filename: str
    original_filename: str
    mime_type: str
    file_path: str
    file_size: int
    page_count: int | None
    status: DocumentStatus
    is_searchable: bool
    cancel_requested: bool
    metadata: Mapping[str, Any]
    processing_started_at: datetime | None
    processing_completed_at: datetime | None
    processing_error: str | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, document: Document) -> "DocumentRecord":
        if document.id is None:
            raise ValueError("Document must be persisted before it can be snapshotted")
        return cls(
            id=document.id,
            hash=document.hash,
            title=document.title,
            filename=document.filename,
            original_filename=document.original_filename,
            mime_type=document.mime_type,
            file_path=document.file_path,
            file_size=document.file_size,
            page_count=document.page_count,
            status=DocumentStatus(document.status),
            is_searchable=bool(document.is_searchable),
            cancel_requested=bool(document.cancel_requested),
            metadata=dict(document.doc_metadata or {}),
            processing_started_at=document.processing_started_at,
            processing_completed_at=document.processing_completed_at,
            processing_error=document.processing_error,
            created_by=document.created_by,
            created_at=document.created_at,
            updated_at=document.updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON friendly payload without the internal identifier."""

        return {
            "hash": self.hash,
            "title": self.title,
            "filename": self.filename,
            "original_filename": self.original_filename,
            "mime_type": self.mime_type,
            "file_size": self.file_size,
            "page_count": self.page_count,
            "status": self.status.value,
            "is_searchable": self.is_searchable,
            "metadata": dict(self.metadata),
            "processing_started_at": _isoformat(self.processing_started_at),
            "processing_completed_at": _isoformat(self.processing_completed_at),
            "processing_error": self.processing_error,
            "created_by": self.created_by,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }


@dataclass(frozen=True, slots=True)
class PageRecord:
    """Immutable view of a persisted page."""

    document_hash: str
    page_number: int
    status: PageStatus
    content: str | None = None
    page_file_path: str | None = None
    thumbnail_path: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    processing_error: str | None = None
    attempts: int = 0
    is_parsed: bool = False
    is_indexed: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, page: DocumentPage, document_hash: str) -> "PageRecord":
        return cls(
            document_hash=document_hash,
            page_number=page.page_number,
            status=PageStatus(page.status),
            content=page.content,
            page_file_path=page.page_file_path,
            thumbnail_path=page.thumbnail_path,
            metadata=dict(page.page_metadata or {}),
            processing_error=page.processing_error,
            attempts=page.attempts,
            is_parsed=bool(page.is_parsed),
            is_indexed=bool(page.is_indexed),
            created_at=page.created_at,
            updated_at=page.updated_at,
        )

    def to_dict(self, *, include_content: bool = True) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "document_hash": self.document_hash,
            "page_number": self.page_number,
            "status": self.status.value,
            "metadata": dict(self.metadata),
            "processing_error": self.processing_error,
            "is_parsed": self.is_parsed,
            "has_thumbnail": self.thumbnail_path is not None,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }
        if include_content:
            payload["content"] = self.content
        return payload


@dataclass(frozen=True, slots=True)
class RunRecord:
    """Immutable view of one processing run audit entry."""

    document_hash: str
    run_number: int
    operation: str
    status: RunStatus
    pages_requested: int = 0
    pages_completed: int = 0
    pages_failed: int = 0
    failure_reason: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_seconds: float | None = None

    @classmethod
    def from_model(cls, run: ProcessingRun, document_hash: str) -> "RunRecord":
        return cls(
            document_hash=document_hash,
            run_number=run.run_number,
            operation=run.operation,
            status=RunStatus(run.status),
            pages_requested=run.pages_requested,
            pages_completed=run.pages_completed,
            pages_failed=run.pages_failed,
            failure_reason=run.failure_reason,
            started_at=run.started_at,
            completed_at=run.completed_at,
            duration_seconds=run.duration_seconds,
        )

    @property
    def success_rate(self) -> float:
        if not self.pages_requested:
            return 0.0
        return round(self.pages_completed / self.pages_requested * 100, 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_number": self.run_number,
            "operation": self.operation,
            "status": self.status.value,
            "pages_requested": self.pages_requested,
            "pages_completed": self.pages_completed,
            "pages_failed": self.pages_failed,
            "success_rate": self.success_rate,
            "failure_reason": self.failure_reason,
            "started_at": _isoformat(self.started_at),
            "completed_at": _isoformat(self.completed_at),
            "duration_seconds": self.duration_seconds,
        }


@dataclass(frozen=True, slots=True)
class Paginated(Generic[T]):
    """One page of a larger ordered result set."""

    items: list[T]
    total: int
    page: int
    per_page: int

    @property
    def last_page(self) -> int:
        if self.per_page <= 0:
            return 1
        return max(1, math.ceil(self.total / self.per_page))

    def to_dict(self, serialise: Callable[[T], Any]) -> dict[str, Any]:
        return {
            "data": [serialise(item) for item in self.items],
            "meta": {
                "current_page": self.page,
                "per_page": self.per_page,
                "total": self.total,
                "last_page": self.last_page,
            },
        }


class MetadataStore(Protocol):
    """Persistence contract for documents and pages.

    Every status change goes through a conditional update keyed by the
    current status so concurrent workers and duplicate job deliveries can
    never overwrite each other's transitions.
    """

    def create_document(self, **fields: Any) -> DocumentRecord: ...

    def find_document(self, document_hash: str) -> DocumentRecord | None: ...

    def list_documents(
        self, filters: Mapping[str, Any] | None = None, page: int = 1, per_page: int = 15
    ) -> Paginated[DocumentRecord]: ...

    def update_document_fields(
        self, document_hash: str, **fields: Any
    ) -> DocumentRecord | None: ...

    def transition_document(
        self,
        document_hash: str,
        from_statuses: Iterable[DocumentStatus],
        to_status: DocumentStatus,
        *,
        cancel_requested: bool | None = None,
        **fields: Any,
    ) -> bool: ...

    def request_cancel(self, document_hash: str) -> bool: ...

    def begin_processing(
        self, document_hash: str, page_count: int, metadata: Mapping[str, Any] | None = None
    ) -> bool: ...

    def delete_document(self, document_hash: str) -> bool: ...

    def find_page(self, document_hash: str, page_number: int) -> PageRecord | None: ...

    def list_pages(
        self, document_hash: str, statuses: Iterable[PageStatus] | None = None
    ) -> list[PageRecord]: ...

    def paginate_pages(
        self,
        document_hash: str,
        status: PageStatus | None = None,
        page: int = 1,
        per_page: int = 15,
    ) -> Paginated[PageRecord]: ...

    def transition_page(
        self,
        document_hash: str,
        page_number: int,
        from_statuses: Iterable[PageStatus],
        to_status: PageStatus,
        **fields: Any,
    ) -> bool: ...

    def reset_pages(
        self, document_hash: str, from_statuses: Iterable[PageStatus]
    ) -> list[int]: ...

    def count_pages_by_status(self, document_hash: str) -> dict[PageStatus, int]: ...

    def mark_pages_indexed(
        self, document_hash: str, page_numbers: Sequence[int] | None, indexed: bool
    ) -> int: ...

    def refresh_searchable(self, document_hash: str) -> bool: ...

    def completed_pages(self) -> list[tuple[DocumentRecord, PageRecord]]: ...

    def count_documents_by_status(self) -> dict[DocumentStatus, int]: ...

    def page_stats(self) -> dict[str, int]: ...

    def start_run(
        self, document_hash: str, run_number: int, operation: str, pages_requested: int
    ) -> RunRecord | None: ...

    def record_run_page(self, document_hash: str, run_number: int, success: bool) -> bool: ...

    def finish_run(
        self,
        document_hash: str,
        run_number: int,
        *,
        cancelled: bool = False,
        failure_reason: str | None = None,
    ) -> RunRecord | None: ...

    def list_runs(self, document_hash: str) -> list[RunRecord]: ...

    def count_runs_by_status(self) -> dict[RunStatus, int]: ...

    def ping(self) -> bool: ...


__all__ = [
    "DocumentRecord",
    "MetadataStore",
    "PageRecord",
    "Paginated",
    "RunRecord",
]
