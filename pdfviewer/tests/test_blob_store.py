"""Tests for the filesystem blob store."""

from __future__ import annotations

import pytest

from pdfviewer.storage import BlobNotFound, page_blob_path, thumbnail_blob_path


def test_put_get_and_overwrite(blobs):
    path = page_blob_path("abc", 1)
    assert path == "pdf-pages/abc/page-1.pdf"

    blobs.put(path, b"first")
    blobs.put(path, b"second")

    assert blobs.get(path) == b"second"
    assert blobs.exists(path)
    leftovers = [item.name for item in blobs.local_path(path).parent.iterdir()]
    assert leftovers == ["page-1.pdf"]


def test_missing_blob_raises_not_found(blobs):
    with pytest.raises(BlobNotFound):
        blobs.get("pdf-pages/abc/page-9.pdf")
    assert blobs.delete("pdf-pages/abc/page-9.pdf") is False


@pytest.mark.parametrize("path", ["../escape.txt", "pdf-pages/../../escape", ""])
def test_paths_cannot_escape_root(blobs, path):
    with pytest.raises(ValueError):
        blobs.local_path(path)


def test_delete_prefix_counts_removed_files(blobs):
    for number in (1, 2, 3):
        blobs.put(thumbnail_blob_path("abc", number), b"jpg")
    blobs.put(thumbnail_blob_path("other", 1), b"jpg")

    assert blobs.delete_prefix("pdf-thumbnails/abc") == 3
    assert blobs.delete_prefix("pdf-thumbnails/abc") == 0
    assert blobs.exists(thumbnail_blob_path("other", 1))


def test_ping_round_trips_a_probe(blobs):
    assert blobs.ping() is True
