"""Metadata repositories for documents, pages and processing runs."""

from .base import DocumentRecord, MetadataStore, PageRecord, Paginated, RunRecord
from .sql import SqlMetadataStore

__all__ = [
    "DocumentRecord",
    "MetadataStore",
    "PageRecord",
    "Paginated",
    "RunRecord",
    "SqlMetadataStore",
]
