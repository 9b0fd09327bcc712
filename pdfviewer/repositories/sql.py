"""SQLModel implementation of the metadata store."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import delete, func, or_, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlmodel import Session, col, select

from ..models import Document, DocumentPage, DocumentStatus, PageStatus, ProcessingRun, RunStatus
from ..utils.errors import DocumentNotFound, StateConflictError, TransientIOError
from .base import DocumentRecord, PageRecord, Paginated, RunRecord

LOGGER = logging.getLogger(__name__)

_DOCUMENT_FIELDS = {
    "hash",
    "title",
    "filename",
    "original_filename",
    "mime_type",
    "file_path",
    "file_size",
    "page_count",
    "is_searchable",
    "cancel_requested",
    "processing_started_at",
    "processing_completed_at",
    "processing_error",
    "created_by",
}
_PAGE_FIELDS = {
    "content",
    "page_file_path",
    "thumbnail_path",
    "processing_error",
    "attempts",
    "is_parsed",
    "is_indexed",
}


def _utcnow() -> datetime:
    """Return the current UTC timestamp."""

    return datetime.now(UTC)


def _document_values(fields: Mapping[str, Any]) -> dict[Any, Any]:
    values: dict[Any, Any] = {}
    for name, value in fields.items():
        if name == "metadata":
            values[Document.doc_metadata] = dict(value or {})
        elif name in _DOCUMENT_FIELDS:
            values[getattr(Document, name)] = value
        else:
            raise ValueError(f"Unsupported document field: {name}")
    values[Document.updated_at] = _utcnow()
    return values


def _page_values(fields: Mapping[str, Any]) -> dict[Any, Any]:
    values: dict[Any, Any] = {}
    for name, value in fields.items():
        if name == "metadata":
            values[DocumentPage.page_metadata] = dict(value or {})
        elif name in _PAGE_FIELDS:
            values[getattr(DocumentPage, name)] = value
        else:
            raise ValueError(f"Unsupported page field: {name}")
    values[DocumentPage.updated_at] = _utcnow()
    return values


def _statuses(values: Iterable[DocumentStatus | PageStatus]) -> list[str]:
    return [value.value for value in values]


def _bulk_update(model):
    return update(model).execution_options(synchronize_session=False)


def _bulk_delete(model):
    return delete(model).execution_options(synchronize_session=False)


def _document_id_subquery(document_hash: str):
    return select(Document.id).where(Document.hash == document_hash).scalar_subquery()


class SqlMetadataStore:
    """Persist documents and pages through short-lived SQLModel sessions."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def _session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    def _run(self, operation: str, action, *args, **kwargs):
        try:
            return action(*args, **kwargs)
        except OperationalError as exc:
            LOGGER.warning("Metadata store unavailable during %s: %s", operation, exc)
            raise TransientIOError(
                f"Metadata store unavailable during {operation}",
                extra={"operation": operation},
            ) from exc

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------
    def create_document(self, **fields: Any) -> DocumentRecord:
        metadata = dict(fields.pop("metadata", None) or {})
        unknown = set(fields) - _DOCUMENT_FIELDS
        if unknown:
            raise ValueError(f"Unsupported document fields: {sorted(unknown)}")

        def _create() -> DocumentRecord:
            document = Document(**fields, doc_metadata=metadata)
            with self._session() as session:
                session.add(document)
                try:
                    session.commit()
                except IntegrityError as exc:
                    session.rollback()
                    raise StateConflictError(
                        "Document already exists", extra={"hash": fields.get("hash")}
                    ) from exc
                session.refresh(document)
                return DocumentRecord.from_model(document)

        return self._run("create_document", _create)

    def find_document(self, document_hash: str) -> DocumentRecord | None:
        def _find() -> DocumentRecord | None:
            with self._session() as session:
                document = session.exec(
                    select(Document).where(Document.hash == document_hash)
                ).first()
                return DocumentRecord.from_model(document) if document else None

        return self._run("find_document", _find)

    def list_documents(
        self, filters: Mapping[str, Any] | None = None, page: int = 1, per_page: int = 15
    ) -> Paginated[DocumentRecord]:
        filters = filters or {}
        page = max(1, page)
        per_page = max(1, per_page)

        conditions = []
        if filters.get("status"):
            conditions.append(Document.status == DocumentStatus(filters["status"]).value)
        if filters.get("is_searchable") is not None:
            conditions.append(Document.is_searchable == bool(filters["is_searchable"]))
        if filters.get("created_by"):
            conditions.append(Document.created_by == filters["created_by"])
        if filters.get("search"):
            pattern = f"%{filters['search']}%"
            conditions.append(
                or_(
                    col(Document.title).ilike(pattern),
                    col(Document.original_filename).ilike(pattern),
                )
            )
        if filters.get("date_from"):
            conditions.append(col(Document.created_at) >= filters["date_from"])
        if filters.get("date_to"):
            conditions.append(col(Document.created_at) <= filters["date_to"])

        def _list() -> Paginated[DocumentRecord]:
            with self._session() as session:
                total = session.exec(
                    select(func.count()).select_from(Document).where(*conditions)
                ).one()
                statement = (
                    select(Document)
                    .where(*conditions)
                    .order_by(col(Document.created_at).desc(), col(Document.id).desc())
                    .offset((page - 1) * per_page)
                    .limit(per_page)
                )
                items = [DocumentRecord.from_model(row) for row in session.exec(statement)]
                return Paginated(items=items, total=int(total), page=page, per_page=per_page)

        return self._run("list_documents", _list)

    def update_document_fields(
        self, document_hash: str, **fields: Any
    ) -> DocumentRecord | None:
        if "status" in fields:
            raise ValueError("Status changes must go through transition_document")
        values = _document_values(fields)

        def _update() -> DocumentRecord | None:
            with self._session() as session:
                session.exec(
                    _bulk_update(Document).where(Document.hash == document_hash).values(values)
                )
                session.commit()
                document = session.exec(
                    select(Document).where(Document.hash == document_hash)
                ).first()
                return DocumentRecord.from_model(document) if document else None

        return self._run("update_document_fields", _update)

    def transition_document(
        self,
        document_hash: str,
        from_statuses: Iterable[DocumentStatus],
        to_status: DocumentStatus,
        *,
        cancel_requested: bool | None = None,
        **fields: Any,
    ) -> bool:
        values = _document_values(fields)
        values[Document.status] = to_status.value
        statement = _bulk_update(Document).where(
            Document.hash == document_hash,
            col(Document.status).in_(_statuses(from_statuses)),
        )
        if cancel_requested is not None:
            statement = statement.where(Document.cancel_requested == cancel_requested)

        def _transition() -> bool:
            with self._session() as session:
                result = session.exec(statement.values(values))
                session.commit()
                return result.rowcount == 1

        return self._run("transition_document", _transition)

    def request_cancel(self, document_hash: str) -> bool:
        statement = (
            _bulk_update(Document)
            .where(
                Document.hash == document_hash,
                Document.status == DocumentStatus.PROCESSING.value,
            )
            .values({Document.cancel_requested: True, Document.updated_at: _utcnow()})
        )

        def _cancel() -> bool:
            with self._session() as session:
                result = session.exec(statement)
                session.commit()
                return result.rowcount == 1

        return self._run("request_cancel", _cancel)

    def begin_processing(
        self, document_hash: str, page_count: int, metadata: Mapping[str, Any] | None = None
    ) -> bool:
        """Fix the page count, enter ``processing`` and create pending pages atomically."""

        if page_count < 1:
            raise ValueError("page_count must be positive")

        def _begin() -> bool:
            with self._session() as session:
                document = session.exec(
                    select(Document).where(Document.hash == document_hash)
                ).first()
                if document is None:
                    raise DocumentNotFound(
                        f"Document with hash {document_hash} not found",
                        extra={"hash": document_hash},
                    )
                merged = dict(document.doc_metadata or {})
                merged.update(metadata or {})
                now = _utcnow()
                result = session.exec(
                    _bulk_update(Document)
                    .where(
                        Document.id == document.id,
                        Document.status == DocumentStatus.UPLOADED.value,
                        or_(
                            col(Document.page_count).is_(None),
                            Document.page_count == page_count,
                        ),
                    )
                    .values(
                        {
                            Document.page_count: page_count,
                            Document.status: DocumentStatus.PROCESSING.value,
                            Document.processing_started_at: now,
                            Document.processing_completed_at: None,
                            Document.processing_error: None,
                            Document.cancel_requested: False,
                            Document.doc_metadata: merged,
                            Document.updated_at: now,
                        }
                    )
                )
                if result.rowcount != 1:
                    session.rollback()
                    return False

                existing = set(
                    session.exec(
                        select(DocumentPage.page_number).where(
                            DocumentPage.document_id == document.id
                        )
                    ).all()
                )
                for page_number in range(1, page_count + 1):
                    if page_number not in existing:
                        session.add(
                            DocumentPage(document_id=document.id, page_number=page_number)
                        )
                session.commit()
                return True

        return self._run("begin_processing", _begin)

    def delete_document(self, document_hash: str) -> bool:
        def _delete() -> bool:
            with self._session() as session:
                document = session.exec(
                    select(Document).where(Document.hash == document_hash)
                ).first()
                if document is None:
                    return False
                session.exec(
                    _bulk_delete(DocumentPage).where(DocumentPage.document_id == document.id)
                )
                session.exec(
                    _bulk_delete(ProcessingRun).where(ProcessingRun.document_id == document.id)
                )
                session.delete(document)
                session.commit()
                return True

        return self._run("delete_document", _delete)

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------
    def find_page(self, document_hash: str, page_number: int) -> PageRecord | None:
        def _find() -> PageRecord | None:
            with self._session() as session:
                page = session.exec(
                    select(DocumentPage).where(
                        DocumentPage.document_id == _document_id_subquery(document_hash),
                        DocumentPage.page_number == page_number,
                    )
                ).first()
                return PageRecord.from_model(page, document_hash) if page else None

        return self._run("find_page", _find)

    def list_pages(
        self, document_hash: str, statuses: Iterable[PageStatus] | None = None
    ) -> list[PageRecord]:
        statement = select(DocumentPage).where(
            DocumentPage.document_id == _document_id_subquery(document_hash)
        )
        if statuses is not None:
            statement = statement.where(col(DocumentPage.status).in_(_statuses(statuses)))
        statement = statement.order_by(col(DocumentPage.page_number))

        def _list() -> list[PageRecord]:
            with self._session() as session:
                return [
                    PageRecord.from_model(page, document_hash)
                    for page in session.exec(statement)
                ]

        return self._run("list_pages", _list)

    def paginate_pages(
        self,
        document_hash: str,
        status: PageStatus | None = None,
        page: int = 1,
        per_page: int = 15,
    ) -> Paginated[PageRecord]:
        page = max(1, page)
        per_page = max(1, per_page)
        conditions = [DocumentPage.document_id == _document_id_subquery(document_hash)]
        if status is not None:
            conditions.append(DocumentPage.status == status.value)

        def _paginate() -> Paginated[PageRecord]:
            with self._session() as session:
                total = session.exec(
                    select(func.count()).select_from(DocumentPage).where(*conditions)
                ).one()
                statement = (
                    select(DocumentPage)
                    .where(*conditions)
                    .order_by(col(DocumentPage.page_number))
                    .offset((page - 1) * per_page)
                    .limit(per_page)
                )
                items = [
                    PageRecord.from_model(row, document_hash)
                    for row in session.exec(statement)
                ]
                return Paginated(items=items, total=int(total), page=page, per_page=per_page)

        return self._run("paginate_pages", _paginate)

    def transition_page(
        self,
        document_hash: str,
        page_number: int,
        from_statuses: Iterable[PageStatus],
        to_status: PageStatus,
        **fields: Any,
    ) -> bool:
        values = _page_values(fields)
        values[DocumentPage.status] = to_status.value
        statement = (
            _bulk_update(DocumentPage)
            .where(
                DocumentPage.document_id == _document_id_subquery(document_hash),
                DocumentPage.page_number == page_number,
                col(DocumentPage.status).in_(_statuses(from_statuses)),
            )
            .values(values)
        )

        def _transition() -> bool:
            with self._session() as session:
                result = session.exec(statement)
                session.commit()
                return result.rowcount == 1

        return self._run("transition_page", _transition)

    def reset_pages(
        self, document_hash: str, from_statuses: Iterable[PageStatus]
    ) -> list[int]:
        """Return pages in ``from_statuses`` to ``pending`` and report which moved."""

        statuses = _statuses(from_statuses)
        document_id = _document_id_subquery(document_hash)

        def _reset() -> list[int]:
            with self._session() as session:
                numbers = list(
                    session.exec(
                        select(DocumentPage.page_number)
                        .where(
                            DocumentPage.document_id == document_id,
                            col(DocumentPage.status).in_(statuses),
                        )
                        .order_by(col(DocumentPage.page_number))
                    ).all()
                )
                if not numbers:
                    return []
                session.exec(
                    _bulk_update(DocumentPage)
                    .where(
                        DocumentPage.document_id == document_id,
                        col(DocumentPage.page_number).in_(numbers),
                        col(DocumentPage.status).in_(statuses),
                    )
                    .values(
                        {
                            DocumentPage.status: PageStatus.PENDING.value,
                            DocumentPage.processing_error: None,
                            DocumentPage.attempts: 0,
                            DocumentPage.updated_at: _utcnow(),
                        }
                    )
                )
                session.commit()
                return numbers

        return self._run("reset_pages", _reset)

    def count_pages_by_status(self, document_hash: str) -> dict[PageStatus, int]:
        def _count() -> dict[PageStatus, int]:
            counts = {status: 0 for status in PageStatus}
            with self._session() as session:
                rows = session.exec(
                    select(DocumentPage.status, func.count())
                    .where(DocumentPage.document_id == _document_id_subquery(document_hash))
                    .group_by(DocumentPage.status)
                ).all()
            for status, count in rows:
                counts[PageStatus(status)] = int(count)
            return counts

        return self._run("count_pages_by_status", _count)

    def mark_pages_indexed(
        self, document_hash: str, page_numbers: Sequence[int] | None, indexed: bool
    ) -> int:
        statement = _bulk_update(DocumentPage).where(
            DocumentPage.document_id == _document_id_subquery(document_hash)
        )
        if page_numbers is not None:
            statement = statement.where(col(DocumentPage.page_number).in_(list(page_numbers)))

        def _mark() -> int:
            with self._session() as session:
                result = session.exec(
                    statement.values(
                        {DocumentPage.is_indexed: indexed, DocumentPage.updated_at: _utcnow()}
                    )
                )
                session.commit()
                return int(result.rowcount or 0)

        return self._run("mark_pages_indexed", _mark)

    def refresh_searchable(self, document_hash: str) -> bool:
        """Recompute ``is_searchable`` from the document status and page index flags."""

        def _refresh() -> bool:
            with self._session() as session:
                document = session.exec(
                    select(Document).where(Document.hash == document_hash)
                ).first()
                if document is None:
                    return False
                searchable = False
                if document.status == DocumentStatus.COMPLETED.value and document.page_count:
                    unindexed = session.exec(
                        select(func.count())
                        .select_from(DocumentPage)
                        .where(
                            DocumentPage.document_id == document.id,
                            or_(
                                DocumentPage.status != PageStatus.COMPLETED.value,
                                DocumentPage.is_indexed == False,  # noqa: E712
                            ),
                        )
                    ).one()
                    searchable = int(unindexed) == 0
                session.exec(
                    _bulk_update(Document)
                    .where(Document.id == document.id)
                    .values({Document.is_searchable: searchable})
                )
                session.commit()
                return searchable

        return self._run("refresh_searchable", _refresh)

    def completed_pages(self) -> list[tuple[DocumentRecord, PageRecord]]:
        def _load() -> list[tuple[DocumentRecord, PageRecord]]:
            with self._session() as session:
                rows = session.exec(
                    select(Document, DocumentPage)
                    .join(DocumentPage, DocumentPage.document_id == Document.id)
                    .where(DocumentPage.status == PageStatus.COMPLETED.value)
                    .order_by(col(Document.id), col(DocumentPage.page_number))
                ).all()
                return [
                    (DocumentRecord.from_model(document), PageRecord.from_model(page, document.hash))
                    for document, page in rows
                ]

        return self._run("completed_pages", _load)

    # ------------------------------------------------------------------
    # Processing runs
    # ------------------------------------------------------------------
    def start_run(
        self, document_hash: str, run_number: int, operation: str, pages_requested: int
    ) -> RunRecord | None:
        """Open the audit entry for one run; an existing entry is returned unchanged."""

        def _start() -> RunRecord | None:
            with self._session() as session:
                document = session.exec(
                    select(Document).where(Document.hash == document_hash)
                ).first()
                if document is None:
                    return None
                run = ProcessingRun(
                    document_id=document.id,
                    run_number=run_number,
                    operation=operation,
                    pages_requested=pages_requested,
                )
                session.add(run)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    run = session.exec(
                        select(ProcessingRun).where(
                            ProcessingRun.document_id == document.id,
                            ProcessingRun.run_number == run_number,
                        )
                    ).one()
                else:
                    session.refresh(run)
                return RunRecord.from_model(run, document_hash)

        return self._run("start_run", _start)

    def record_run_page(self, document_hash: str, run_number: int, success: bool) -> bool:
        counter = ProcessingRun.pages_completed if success else ProcessingRun.pages_failed
        statement = (
            _bulk_update(ProcessingRun)
            .where(
                ProcessingRun.document_id == _document_id_subquery(document_hash),
                ProcessingRun.run_number == run_number,
                ProcessingRun.status == RunStatus.RUNNING.value,
            )
            .values({counter: counter + 1})
        )

        def _record() -> bool:
            with self._session() as session:
                result = session.exec(statement)
                session.commit()
                return result.rowcount == 1

        return self._run("record_run_page", _record)

    def finish_run(
        self,
        document_hash: str,
        run_number: int,
        *,
        cancelled: bool = False,
        failure_reason: str | None = None,
    ) -> RunRecord | None:
        """Close a running entry, deriving its outcome from the page counters."""

        def _finish() -> RunRecord | None:
            with self._session() as session:
                run = session.exec(
                    select(ProcessingRun).where(
                        ProcessingRun.document_id == _document_id_subquery(document_hash),
                        ProcessingRun.run_number == run_number,
                    )
                ).first()
                if run is None or run.status != RunStatus.RUNNING.value:
                    return None
                if cancelled:
                    status = RunStatus.CANCELLED
                elif not run.pages_failed:
                    status = RunStatus.COMPLETED
                elif run.pages_completed:
                    status = RunStatus.PARTIAL
                else:
                    status = RunStatus.FAILED
                now = _utcnow()
                started_at = run.started_at
                if started_at.tzinfo is None:
                    started_at = started_at.replace(tzinfo=UTC)
                result = session.exec(
                    _bulk_update(ProcessingRun)
                    .where(
                        ProcessingRun.id == run.id,
                        ProcessingRun.status == RunStatus.RUNNING.value,
                    )
                    .values(
                        {
                            ProcessingRun.status: status.value,
                            ProcessingRun.completed_at: now,
                            ProcessingRun.duration_seconds: round(
                                max((now - started_at).total_seconds(), 0.0), 3
                            ),
                            ProcessingRun.failure_reason: failure_reason,
                        }
                    )
                )
                if result.rowcount != 1:
                    session.rollback()
                    return None
                session.commit()
                session.refresh(run)
                return RunRecord.from_model(run, document_hash)

        return self._run("finish_run", _finish)

    def list_runs(self, document_hash: str) -> list[RunRecord]:
        def _list() -> list[RunRecord]:
            with self._session() as session:
                return [
                    RunRecord.from_model(run, document_hash)
                    for run in session.exec(
                        select(ProcessingRun)
                        .where(ProcessingRun.document_id == _document_id_subquery(document_hash))
                        .order_by(col(ProcessingRun.run_number))
                    )
                ]

        return self._run("list_runs", _list)

    def count_runs_by_status(self) -> dict[RunStatus, int]:
        def _count() -> dict[RunStatus, int]:
            counts = {status: 0 for status in RunStatus}
            with self._session() as session:
                rows = session.exec(
                    select(ProcessingRun.status, func.count()).group_by(ProcessingRun.status)
                ).all()
            for status, count in rows:
                counts[RunStatus(status)] = int(count)
            return counts

        return self._run("count_runs_by_status", _count)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------
    def count_documents_by_status(self) -> dict[DocumentStatus, int]:
        def _count() -> dict[DocumentStatus, int]:
            counts = {status: 0 for status in DocumentStatus}
            with self._session() as session:
                rows = session.exec(
                    select(Document.status, func.count()).group_by(Document.status)
                ).all()
            for status, count in rows:
                counts[DocumentStatus(status)] = int(count)
            return counts

        return self._run("count_documents_by_status", _count)

    def page_stats(self) -> dict[str, int]:
        def _stats() -> dict[str, int]:
            with self._session() as session:
                total = session.exec(select(func.count()).select_from(DocumentPage)).one()
                indexed = session.exec(
                    select(func.count())
                    .select_from(DocumentPage)
                    .where(DocumentPage.is_indexed == True)  # noqa: E712
                ).one()
                content_size = session.exec(
                    select(func.coalesce(func.sum(func.length(DocumentPage.content)), 0))
                ).one()
            return {
                "total_pages": int(total),
                "indexed_pages": int(indexed),
                "total_content_size": int(content_size or 0),
            }

        return self._run("page_stats", _stats)

    def ping(self) -> bool:
        try:
            with self._session() as session:
                session.exec(select(1)).one()
        except SQLAlchemyError:
            return False
        return True


__all__ = ["SqlMetadataStore"]
