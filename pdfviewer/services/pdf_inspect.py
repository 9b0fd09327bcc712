"""Cheap structural checks and metadata extraction for uploaded PDFs."""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import fitz  # type: ignore

from ..utils.errors import InvalidDocument

LOGGER = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF-"
_PDF_DATE = re.compile(
    r"^D:(?P<year>\d{4})(?P<month>\d{2})?(?P<day>\d{2})?"
    r"(?P<hour>\d{2})?(?P<minute>\d{2})?(?P<second>\d{2})?"
)


def has_pdf_signature(path: Path | str) -> bool:
    """Return ``True`` when the PDF header appears within the first kilobyte."""

    try:
        with Path(path).open("rb") as handle:
            head = handle.read(1024)
    except OSError:
        return False
    return PDF_MAGIC in head


def validate_pdf(path: Path | str) -> bool:
    """Return ``True`` if ``path`` is a readable, unencrypted PDF with pages."""

    source = Path(path)
    if not source.is_file() or source.stat().st_size == 0:
        return False
    if not has_pdf_signature(source):
        return False
    try:
        with fitz.open(source) as document:
            if document.needs_pass:
                return False
            return document.page_count > 0
    except (RuntimeError, ValueError) as exc:
        LOGGER.info("PDF validation failed for %s: %s", source.name, exc)
        return False


def get_page_count(path: Path | str) -> int:
    """Return the number of pages, raising :class:`InvalidDocument` when unknown."""

    source = Path(path)
    try:
        with fitz.open(source) as document:
            count = int(document.page_count)
    except (RuntimeError, ValueError) as exc:
        raise InvalidDocument(
            "Unable to determine page count", extra={"file": source.name}
        ) from exc
    if count < 1:
        raise InvalidDocument("PDF contains no pages", extra={"file": source.name})
    return count


def _parse_pdf_date(raw: str | None) -> str | None:
    if not raw:
        return None
    match = _PDF_DATE.match(raw.strip())
    if match is None:
        return raw
    parts = {name: int(value) for name, value in match.groupdict().items() if value}
    try:
        parsed = datetime(
            parts["year"],
            parts.get("month", 1),
            parts.get("day", 1),
            parts.get("hour", 0),
            parts.get("minute", 0),
            parts.get("second", 0),
            tzinfo=UTC,
        )
    except ValueError:
        return raw
    return parsed.isoformat()


def human_file_size(size: int) -> str:
    """Return a short human readable size such as ``1.50 MB``."""

    units = ("B", "KB", "MB", "GB", "TB")
    value = float(max(size, 0))
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    if index == 0:
        return f"{int(value)} B"
    return f"{value:.2f} {units[index]}"


def extract_metadata(path: Path | str) -> dict[str, Any]:
    """Return descriptive metadata stored in the PDF info dictionary."""

    source = Path(path)
    file_size = source.stat().st_size if source.exists() else 0
    try:
        with fitz.open(source) as document:
            info = dict(document.metadata or {})
            page_count = int(document.page_count)
    except (RuntimeError, ValueError) as exc:
        raise InvalidDocument(
            "Unable to read PDF metadata", extra={"file": source.name}
        ) from exc

    def _clean(key: str) -> str | None:
        value = info.get(key)
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    return {
        "title": _clean("title"),
        "author": _clean("author"),
        "subject": _clean("subject"),
        "keywords": _clean("keywords"),
        "creator": _clean("creator"),
        "producer": _clean("producer"),
        "creation_date": _parse_pdf_date(_clean("creationDate")),
        "modification_date": _parse_pdf_date(_clean("modDate")),
        "page_count": page_count,
        "file_size": file_size,
        "file_size_human": human_file_size(file_size),
    }


__all__ = [
    "PDF_MAGIC",
    "extract_metadata",
    "get_page_count",
    "has_pdf_signature",
    "human_file_size",
    "validate_pdf",
]
