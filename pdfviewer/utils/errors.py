"""Exception taxonomy shared by the processing pipeline and the API layer."""

from __future__ import annotations

from typing import Any, Dict


class PdfViewerError(Exception):
    """Base error carrying a machine readable code and structured context."""

    code = "pdfviewer_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        extra: Dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.extra = extra or {}


class ValidationError(PdfViewerError):
    """Raised for bad input such as a non-PDF upload. Never retried."""

    code = "validation_error"


class InvalidDocument(ValidationError):
    """Raised when a document file is not a readable PDF."""

    code = "invalid_document"


class NotFoundError(PdfViewerError):
    """Raised when a referenced entity does not exist."""

    code = "not_found"


class DocumentNotFound(NotFoundError):
    """Raised when no document matches the supplied hash."""

    code = "document_not_found"


class PageNotFound(NotFoundError):
    """Raised when a document has no page with the requested number."""

    code = "page_not_found"


class StateConflictError(PdfViewerError):
    """Raised when a conditional status update loses a race."""

    code = "state_conflict"


class InvalidState(StateConflictError):
    """Raised when an operation is not allowed in the document's current status."""

    code = "invalid_state"


class TransientIOError(PdfViewerError):
    """Raised when a blob or metadata store is temporarily unavailable."""

    code = "transient_io"


class PageExtractionError(PdfViewerError):
    """Raised when a single page cannot be turned into artifacts."""

    code = "page_extraction_failed"


class PermanentExtractionError(PageExtractionError):
    """Raised for corrupted pages or unsupported structures."""

    code = "permanent_extraction_failed"


__all__ = [
    "DocumentNotFound",
    "InvalidDocument",
    "InvalidState",
    "NotFoundError",
    "PageExtractionError",
    "PageNotFound",
    "PdfViewerError",
    "PermanentExtractionError",
    "StateConflictError",
    "TransientIOError",
    "ValidationError",
]
