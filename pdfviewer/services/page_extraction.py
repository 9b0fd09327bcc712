"""Turn one page of a stored PDF into a page extract, text and a thumbnail.

Every artifact is written to a path derived only from the document hash and
the page number, so re-running an extraction overwrites the previous
attempt instead of leaving orphans behind.
"""

from __future__ import annotations

import io
import logging
import re
from typing import Any, Protocol

import fitz  # type: ignore
from PIL import Image

from ..repositories import DocumentRecord
from ..storage import BlobStore, page_blob_path, thumbnail_blob_path
from ..storage.blob_store import PAGES_CATEGORY, THUMBNAILS_CATEGORY
from ..utils.errors import PageExtractionError, PermanentExtractionError
from .pdf_inspect import has_pdf_signature

LOGGER = logging.getLogger(__name__)

_PAGE_PATH = re.compile(
    rf"^{PAGES_CATEGORY}/(?P<hash>[^/]+)/page-(?P<page>\d+)\.pdf$"
)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_INLINE_SPACE = re.compile(r"[ \t\u00a0]+")
_EXTRA_NEWLINES = re.compile(r"\n{3,}")


def clean_text(text: str) -> str:
    """Normalise whitespace and strip control characters from extracted text."""

    cleaned = _CONTROL_CHARS.sub("", text.replace("\r\n", "\n").replace("\r", "\n"))
    lines = [_INLINE_SPACE.sub(" ", line).strip() for line in cleaned.split("\n")]
    return _EXTRA_NEWLINES.sub("\n\n", "\n".join(lines)).strip()


class PageExtractor(Protocol):
    """Operations the orchestrator needs from a page extraction worker."""

    def extract_page(self, document: DocumentRecord, page_number: int) -> str: ...

    def extract_text(self, page_file_path: str) -> str: ...

    def generate_thumbnail(
        self, page_file_path: str, width: int | None = None, height: int | None = None
    ) -> str: ...

    def validate_page_file(self, page_file_path: str) -> bool: ...

    def inspect_page(self, page_file_path: str) -> dict[str, Any]: ...

    def get_page_file_path(self, document_hash: str, page_number: int) -> str: ...

    def cleanup_page_files(self, document_hash: str) -> bool: ...


class PageExtractionWorker:
    """PyMuPDF and Pillow backed implementation of :class:`PageExtractor`."""

    def __init__(
        self,
        blobs: BlobStore,
        *,
        thumbnail_width: int = 300,
        thumbnail_height: int = 400,
        thumbnail_quality: int = 80,
    ) -> None:
        self._blobs = blobs
        self.thumbnail_width = thumbnail_width
        self.thumbnail_height = thumbnail_height
        self.thumbnail_quality = thumbnail_quality

    def get_page_file_path(self, document_hash: str, page_number: int) -> str:
        return page_blob_path(document_hash, page_number)

    def extract_page(self, document: DocumentRecord, page_number: int) -> str:
        """Copy ``page_number`` of the original into its own single-page PDF."""

        source_path = self._blobs.local_path(document.file_path)
        try:
            with fitz.open(source_path) as source:
                if page_number < 1 or page_number > source.page_count:
                    raise PageExtractionError(
                        f"Page {page_number} is out of range (1-{source.page_count})",
                        extra={"page_number": page_number},
                    )
                with fitz.open() as single:
                    single.insert_pdf(
                        source, from_page=page_number - 1, to_page=page_number - 1
                    )
                    data = single.tobytes(garbage=3, deflate=True)
        except PageExtractionError:
            raise
        except (OSError, RuntimeError, ValueError) as exc:
            raise PageExtractionError(
                f"Unable to read source for page {page_number}: {exc}",
                extra={"page_number": page_number},
            ) from exc

        path = self.get_page_file_path(document.hash, page_number)
        self._blobs.put(path, data)
        LOGGER.debug("Extracted page %s of %s to %s", page_number, document.hash, path)
        return path

    def _open_page(self, page_file_path: str) -> fitz.Document:
        data = self._blobs.get(page_file_path)
        try:
            return fitz.open(stream=data, filetype="pdf")
        except (RuntimeError, ValueError) as exc:
            raise PermanentExtractionError(
                f"Page file {page_file_path} is not a readable PDF: {exc}",
                extra={"path": page_file_path},
            ) from exc

    def validate_page_file(self, page_file_path: str) -> bool:
        """Return ``True`` when the extract exists and holds exactly one readable page."""

        if not self._blobs.exists(page_file_path):
            return False
        if not has_pdf_signature(self._blobs.local_path(page_file_path)):
            return False
        try:
            with self._open_page(page_file_path) as document:
                if document.page_count != 1:
                    return False
                document[0].bound()
        except (PermanentExtractionError, RuntimeError, ValueError):
            return False
        return True

    def inspect_page(self, page_file_path: str) -> dict[str, Any]:
        with self._open_page(page_file_path) as document:
            page = document[0]
            rect = page.rect
            return {
                "width": round(float(rect.width), 2),
                "height": round(float(rect.height), 2),
                "rotation": int(page.rotation),
                "file_size": len(self._blobs.get(page_file_path)),
            }

    def extract_text(self, page_file_path: str) -> str:
        """Return cleaned text; image-only pages yield an empty string."""

        try:
            with self._open_page(page_file_path) as document:
                text = "\n".join(page.get_text("text") for page in document)
        except (RuntimeError, ValueError) as exc:
            raise PermanentExtractionError(
                f"Text extraction failed for {page_file_path}: {exc}",
                extra={"path": page_file_path},
            ) from exc
        return clean_text(text)

    def _thumbnail_path_for(self, page_file_path: str) -> str:
        match = _PAGE_PATH.match(page_file_path)
        if match is None:
            raise PageExtractionError(
                f"Unexpected page file path {page_file_path}",
                extra={"path": page_file_path},
            )
        return thumbnail_blob_path(match.group("hash"), int(match.group("page")))

    def generate_thumbnail(
        self, page_file_path: str, width: int | None = None, height: int | None = None
    ) -> str:
        """Render a JPEG that fits within ``width`` x ``height`` keeping the aspect ratio."""

        box_width = width or self.thumbnail_width
        box_height = height or self.thumbnail_height
        target = self._thumbnail_path_for(page_file_path)
        try:
            with self._open_page(page_file_path) as document:
                page = document[0]
                rect = page.rect
                if rect.width <= 0 or rect.height <= 0:
                    raise PermanentExtractionError(
                        f"Page {page_file_path} has no drawable area",
                        extra={"path": page_file_path},
                    )
                # Render at twice the target scale and let Pillow downsample.
                scale = min(box_width / rect.width, box_height / rect.height) * 2
                pixmap = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
                image = Image.frombytes(
                    "RGB", (pixmap.width, pixmap.height), pixmap.samples
                )
        except PermanentExtractionError:
            raise
        except (RuntimeError, ValueError) as exc:
            raise PermanentExtractionError(
                f"Thumbnail rendering failed for {page_file_path}: {exc}",
                extra={"path": page_file_path},
            ) from exc

        image.thumbnail((box_width, box_height), Image.Resampling.LANCZOS)
        buffer = io.BytesIO()
        image.save(buffer, format="JPEG", quality=self.thumbnail_quality, optimize=True)
        self._blobs.put(target, buffer.getvalue())
        return target

    def cleanup_page_files(self, document_hash: str) -> bool:
        """Remove every page extract and thumbnail stored for ``document_hash``."""

        removed = 0
        for category in (PAGES_CATEGORY, THUMBNAILS_CATEGORY):
            removed += self._blobs.delete_prefix(f"{category}/{document_hash}")
        LOGGER.info("Removed %d page artifacts for document %s", removed, document_hash)
        return True


__all__ = ["PageExtractionWorker", "PageExtractor", "clean_text"]
