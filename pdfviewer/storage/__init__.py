"""Blob storage backends."""

from .blob_store import (
    BlobNotFound,
    BlobStore,
    LocalBlobStore,
    document_blob_path,
    page_blob_path,
    thumbnail_blob_path,
)

__all__ = [
    "BlobNotFound",
    "BlobStore",
    "LocalBlobStore",
    "document_blob_path",
    "page_blob_path",
    "thumbnail_blob_path",
]
