"""Shared fixtures for unit tests."""

from __future__ import annotations

from pathlib import Path

import fitz  # type: ignore
import pytest
from sqlalchemy import event
from sqlmodel import SQLModel, create_engine

from pdfviewer.database import _enable_sqlite_wal
from pdfviewer.models import document, page, run  # noqa: F401  Registers tables.
from pdfviewer.repositories import SqlMetadataStore
from pdfviewer.storage import LocalBlobStore


@pytest.fixture()
def engine(tmp_path: Path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'unit.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    event.listen(engine, "connect", _enable_sqlite_wal)
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def store(engine) -> SqlMetadataStore:
    return SqlMetadataStore(engine)


@pytest.fixture()
def blobs(tmp_path: Path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture()
def pdf_factory(tmp_path: Path):
    """Return a callable writing a PDF with one text block per page."""

    def _build(texts, *, name: str = "sample.pdf", title: str | None = None) -> Path:
        target = tmp_path / name
        document = fitz.open()
        try:
            for text in texts:
                document.new_page(width=612, height=792).insert_text((72, 72), text)
            if title:
                document.set_metadata({"title": title, "author": "QA"})
            document.save(str(target))
        finally:
            document.close()
        return target

    return _build


@pytest.fixture()
def make_document(store):
    """Return a callable inserting an uploaded document row."""

    def _create(document_hash: str = "a" * 64, **overrides):
        fields = {
            "hash": document_hash,
            "title": "Sample",
            "filename": "sample.pdf",
            "original_filename": "sample.pdf",
            "mime_type": "application/pdf",
            "file_path": f"pdf-documents/{document_hash}/sample.pdf",
            "file_size": 10,
        }
        fields.update(overrides)
        return store.create_document(**fields)

    return _create
