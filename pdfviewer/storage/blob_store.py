"""Filesystem blob storage for original files, page extracts and thumbnails."""

from __future__ import annotations

import logging
import os
import secrets
import shutil
from pathlib import Path, PurePosixPath
from typing import Protocol

from ..utils.errors import NotFoundError, TransientIOError

LOGGER = logging.getLogger(__name__)

DOCUMENTS_CATEGORY = "pdf-documents"
PAGES_CATEGORY = "pdf-pages"
THUMBNAILS_CATEGORY = "pdf-thumbnails"


class BlobNotFound(NotFoundError):
    """Raised when a blob path does not exist."""

    code = "blob_not_found"


def document_blob_path(document_hash: str, filename: str) -> str:
    """Return the blob path for an uploaded original file."""

    return f"{DOCUMENTS_CATEGORY}/{document_hash}/{filename}"


def page_blob_path(document_hash: str, page_number: int) -> str:
    """Return the deterministic blob path for a single-page PDF extract."""

    return f"{PAGES_CATEGORY}/{document_hash}/page-{page_number}.pdf"


def thumbnail_blob_path(document_hash: str, page_number: int, ext: str = "jpg") -> str:
    """Return the deterministic blob path for a page thumbnail."""

    return f"{THUMBNAILS_CATEGORY}/{document_hash}/page-{page_number}.{ext}"


class BlobStore(Protocol):
    """Path addressed byte storage."""

    def put(self, path: str, data: bytes) -> str: ...

    def get(self, path: str) -> bytes: ...

    def delete(self, path: str) -> bool: ...

    def exists(self, path: str) -> bool: ...

    def delete_prefix(self, prefix: str) -> int: ...

    def local_path(self, path: str) -> Path: ...

    def ping(self) -> bool: ...


class LocalBlobStore:
    """Store blobs beneath a root directory using atomic replace-on-write."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def local_path(self, path: str) -> Path:
        """Resolve ``path`` below the root, rejecting traversal outside it."""

        relative = PurePosixPath(path.strip().lstrip("/"))
        if not relative.parts or any(part in {"..", ""} for part in relative.parts):
            raise ValueError(f"Invalid blob path: {path!r}")
        resolved = (self._root / Path(*relative.parts)).resolve()
        if resolved != self._root and self._root not in resolved.parents:
            raise ValueError(f"Blob path escapes storage root: {path!r}")
        return resolved

    def put(self, path: str, data: bytes) -> str:
        target = self.local_path(path)
        temp_path = target.with_name(f".{target.name}.{secrets.token_hex(8)}.tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with temp_path.open("wb") as handle:
                handle.write(data)
            os.replace(temp_path, target)
        except OSError as exc:
            if temp_path.exists():
                temp_path.unlink()
            raise TransientIOError(
                f"Unable to write blob {path}", extra={"path": path}
            ) from exc
        return path

    def get(self, path: str) -> bytes:
        target = self.local_path(path)
        try:
            return target.read_bytes()
        except FileNotFoundError as exc:
            raise BlobNotFound(f"Blob {path} not found", extra={"path": path}) from exc
        except OSError as exc:
            raise TransientIOError(
                f"Unable to read blob {path}", extra={"path": path}
            ) from exc

    def delete(self, path: str) -> bool:
        target = self.local_path(path)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise TransientIOError(
                f"Unable to delete blob {path}", extra={"path": path}
            ) from exc
        return True

    def exists(self, path: str) -> bool:
        return self.local_path(path).is_file()

    def delete_prefix(self, prefix: str) -> int:
        """Remove every blob below ``prefix`` and return how many files went away."""

        target = self.local_path(prefix)
        if not target.exists():
            return 0
        if target.is_file():
            return 1 if self.delete(prefix) else 0
        removed = sum(1 for item in target.rglob("*") if item.is_file())
        try:
            shutil.rmtree(target)
        except OSError as exc:
            raise TransientIOError(
                f"Unable to delete blobs under {prefix}", extra={"path": prefix}
            ) from exc
        return removed

    def ping(self) -> bool:
        probe = f".health/{secrets.token_hex(4)}"
        try:
            self.put(probe, b"ok")
            self.delete(probe)
        except TransientIOError:
            LOGGER.warning("Blob storage health probe failed", exc_info=True)
            return False
        return True


__all__ = [
    "BlobNotFound",
    "BlobStore",
    "DOCUMENTS_CATEGORY",
    "LocalBlobStore",
    "PAGES_CATEGORY",
    "THUMBNAILS_CATEGORY",
    "document_blob_path",
    "page_blob_path",
    "thumbnail_blob_path",
]
