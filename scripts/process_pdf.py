#!/usr/bin/env python3
"""Run a PDF through the viewer API stack and dump the results as JSON."""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any

from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


def _set_environment(work_dir: Path) -> None:
    """Configure environment variables so the API writes into ``work_dir``."""

    work_dir.mkdir(parents=True, exist_ok=True)
    os.environ.setdefault("STORAGE_DIR", str(work_dir / "storage"))
    os.environ.setdefault(
        "DATABASE_URL", f"sqlite:///{(work_dir / 'pdfviewer.db').resolve()}"
    )


def _initialise_app() -> TestClient:
    """Return a ``TestClient`` configured with freshly initialised settings."""

    from pdfviewer.config import reset_settings_cache
    from pdfviewer.database import reset_database_state
    from pdfviewer.main import app

    reset_settings_cache()
    reset_database_state()

    return TestClient(app)


def _raise_for_status(response) -> None:
    """Raise a descriptive error if the response indicates failure."""

    if response.status_code >= 400:
        detail: str | None = None
        try:
            payload = response.json()
        except ValueError:  # pragma: no cover - diagnostic path
            payload = None
        if isinstance(payload, dict):
            detail = payload.get("detail")
        raise RuntimeError(
            f"Request failed with status {response.status_code}: {detail or response.text}"
        )


def _write_json(target: Path, payload: Any) -> None:
    """Serialise *payload* to ``target`` with UTF-8 encoding."""

    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(
        json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8"
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("pdf", type=Path, help="Path to the PDF document to process")
    parser.add_argument(
        "--work-dir",
        type=Path,
        default=Path("runtime_artifacts"),
        help="Directory holding the database, blobs and JSON artefacts",
    )
    parser.add_argument("--query", help="Optional search to run once processing finishes")
    parser.add_argument(
        "--timeout", type=float, default=300.0, help="Seconds to wait for the page workers"
    )
    args = parser.parse_args(argv)

    pdf_path = args.pdf.expanduser().resolve()
    if not pdf_path.exists():
        parser.error(f"PDF file not found: {pdf_path}")

    work_dir = args.work_dir.expanduser().resolve()
    _set_environment(work_dir)

    client = _initialise_app()

    with client as api_client:
        with pdf_path.open("rb") as handle:
            response = api_client.post(
                "/api/documents",
                files={"file": (pdf_path.name, handle, "application/pdf")},
                data={"process": "true"},
            )
        _raise_for_status(response)
        document = response.json()["data"]
        document_hash = document["hash"]

        if not api_client.app.state.container.queue.wait_idle(timeout=args.timeout):
            print(f"Timed out after {args.timeout:.0f}s; progress is saved and resumes on restart")

        progress_response = api_client.get(f"/api/documents/{document_hash}/progress")
        _raise_for_status(progress_response)
        progress = progress_response.json()["data"]

        pages_response = api_client.get(
            f"/api/documents/{document_hash}/pages", params={"per_page": 100}
        )
        _raise_for_status(pages_response)
        pages = pages_response.json()["data"]

        search_payload = None
        if args.query:
            search_response = api_client.get(
                f"/api/search/documents/{document_hash}", params={"q": args.query}
            )
            _raise_for_status(search_response)
            search_payload = search_response.json()

    artefact_dir = work_dir / "artefacts" / document_hash[:16]
    _write_json(artefact_dir / "document.json", document)
    _write_json(artefact_dir / "progress.json", progress)
    _write_json(artefact_dir / "pages.json", pages)
    if search_payload is not None:
        _write_json(artefact_dir / "search.json", search_payload)

    summary_lines = [
        f"Processed document {document_hash[:16]} ({pdf_path.name})",
        f"- Status: {progress['status']} ({progress['progress_percentage']}%)",
        f"- Pages: {progress['completed_pages']} completed, {progress['failed_pages']} failed",
    ]
    if search_payload is not None:
        summary_lines.append(f"- Search hits for {args.query!r}: {search_payload['meta']['total']}")

    print("\n".join(summary_lines))
    print(f"Artefacts written to {artefact_dir}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
