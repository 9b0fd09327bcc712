"""Builders for real PDF fixtures."""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

import fitz  # type: ignore


def page_text(sequence: int, page_number: int) -> str:
    return (
        f"Document {sequence} page {page_number}\n"
        f"Routine maintenance notes for unit {sequence}-{page_number}."
    )


def make_pdf(
    path: Path,
    *,
    sequence: int,
    pages: int = 3,
    texts: Sequence[str] | None = None,
    title: str | None = None,
) -> Path:
    """Write a ``pages`` page PDF whose bytes are unique for each ``sequence``."""

    document = fitz.open()
    try:
        for index in range(pages):
            page = document.new_page(width=612, height=792)
            text = texts[index] if texts is not None else page_text(sequence, index + 1)
            page.insert_text((72, 72), text, fontsize=12)
        if title:
            document.set_metadata({"title": title})
        path.parent.mkdir(parents=True, exist_ok=True)
        document.save(str(path))
    finally:
        document.close()
    return path


def pdf_bytes(tmp_path: Path, *, sequence: int, **kwargs) -> bytes:
    return make_pdf(tmp_path / f"fixture-{sequence}.pdf", sequence=sequence, **kwargs).read_bytes()
