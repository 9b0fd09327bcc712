"""Tests for PDF validation and metadata helpers."""

from __future__ import annotations

import pytest

from pdfviewer.services.pdf_inspect import (
    extract_metadata,
    get_page_count,
    has_pdf_signature,
    human_file_size,
    validate_pdf,
)
from pdfviewer.utils.errors import InvalidDocument


def test_valid_pdf_passes_every_check(pdf_factory):
    path = pdf_factory(["one", "two"], title="Field guide")

    assert has_pdf_signature(path)
    assert validate_pdf(path)
    assert get_page_count(path) == 2

    metadata = extract_metadata(path)
    assert metadata["title"] == "Field guide"
    assert metadata["author"] == "QA"
    assert metadata["page_count"] == 2
    assert metadata["file_size"] == path.stat().st_size
    assert metadata["file_size_human"].endswith(("B", "KB"))


def test_non_pdf_and_empty_files_are_rejected(tmp_path):
    junk = tmp_path / "junk.pdf"
    junk.write_bytes(b"hello world")
    empty = tmp_path / "empty.pdf"
    empty.write_bytes(b"")

    assert not validate_pdf(junk)
    assert not validate_pdf(empty)
    assert not validate_pdf(tmp_path / "missing.pdf")
    with pytest.raises(InvalidDocument):
        get_page_count(junk)


def test_truncated_pdf_with_magic_bytes_is_rejected(tmp_path):
    broken = tmp_path / "broken.pdf"
    broken.write_bytes(b"%PDF-1.7\nthis is not a real document")

    assert has_pdf_signature(broken)
    assert not validate_pdf(broken)


@pytest.mark.parametrize(
    ("size", "expected"),
    [(0, "0 B"), (512, "512 B"), (2048, "2.00 KB"), (5 * 1024 * 1024, "5.00 MB")],
)
def test_human_file_size(size, expected):
    assert human_file_size(size) == expected
