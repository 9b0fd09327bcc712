"""Database models for the PDF viewer service."""

from .document import Document, DocumentStatus
from .page import DocumentPage, PageStatus
from .run import ProcessingRun, RunStatus

__all__ = [
    "Document",
    "DocumentPage",
    "DocumentStatus",
    "PageStatus",
    "ProcessingRun",
    "RunStatus",
]
