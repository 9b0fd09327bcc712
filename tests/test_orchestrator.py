"""End-to-end scenarios for the document processing pipeline."""

from __future__ import annotations

import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from threading import Event, Lock

import pytest

from pdfviewer.config import get_settings
from pdfviewer.models import DocumentStatus, PageStatus, RunStatus
from pdfviewer.observability import metrics_registry
from pdfviewer.services.page_extraction import PageExtractionWorker
from pdfviewer.storage import LocalBlobStore
from pdfviewer.utils.errors import (
    DocumentNotFound,
    InvalidDocument,
    InvalidState,
    PermanentExtractionError,
    TransientIOError,
)
from tests.factories import make_pdf


class ScriptedWorker:
    """Wrap the real worker to inject failures and hold pages back."""

    def __init__(
        self,
        *,
        fail_pages=(),
        invalid_pages=(),
        flaky_pages=(),
        block_from: int | None = None,
    ) -> None:
        self.inner = PageExtractionWorker(LocalBlobStore(get_settings().storage_dir))
        self.fail_pages = set(fail_pages)
        self.invalid_pages = set(invalid_pages)
        self.flaky_pages = set(flaky_pages)
        self.block_from = block_from
        self.gate = Event()
        self.calls: Counter[int] = Counter()
        self._lock = Lock()

    def extract_page(self, document, page_number):
        with self._lock:
            self.calls[page_number] += 1
        if self.block_from is not None and page_number >= self.block_from:
            self.gate.wait(timeout=10)
        if page_number in self.flaky_pages and self.calls[page_number] == 1:
            raise TransientIOError("Storage briefly unavailable")
        if page_number in self.fail_pages:
            raise PermanentExtractionError(f"Page {page_number} is corrupted")
        return self.inner.extract_page(document, page_number)

    def validate_page_file(self, page_path):
        if any(page_path.endswith(f"page-{number}.pdf") for number in self.invalid_pages):
            return False
        return self.inner.validate_page_file(page_path)

    def __getattr__(self, name):
        return getattr(self.inner, name)


def _wait_for(predicate, timeout: float = 15.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.02)
    raise AssertionError("condition not reached in time")


def _upload(container, tmp_path: Path, *, sequence: int, pages: int = 3, **kwargs):
    source = make_pdf(tmp_path / f"source-{sequence}.pdf", sequence=sequence, pages=pages, **kwargs)
    document, created = container.documents.upload(source, f"manual-{sequence}.pdf")
    assert created
    return document


def test_three_page_document_completes_and_becomes_searchable(container, tmp_path):
    document = _upload(container, tmp_path, sequence=1)

    assert container.orchestrator.process(document.hash) == DocumentStatus.PROCESSING
    assert container.queue.wait_idle(timeout=30)

    final = container.store.find_document(document.hash)
    assert final.status == DocumentStatus.COMPLETED
    assert final.is_searchable is True
    assert final.page_count == 3
    assert final.processing_completed_at is not None

    pages = container.store.list_pages(document.hash)
    assert [page.page_number for page in pages] == [1, 2, 3]
    assert all(page.status == PageStatus.COMPLETED for page in pages)
    assert all(page.is_indexed for page in pages)
    assert "Document 1 page 2" in pages[1].content
    assert all(container.blobs.exists(page.thumbnail_path) for page in pages)

    progress = container.orchestrator.get_processing_status(document.hash)
    assert progress["progress_percentage"] == 100.0
    assert progress["completed_pages"] == 3
    assert progress["current_run"]["status"] == "completed"
    assert progress["current_run"]["pages_completed"] == 3
    assert metrics_registry.pipeline_snapshot()["documents_completed"] == 1


def test_process_twice_is_a_no_op(container, tmp_path):
    document = _upload(container, tmp_path, sequence=2)

    container.orchestrator.process(document.hash)
    second = container.orchestrator.process(document.hash)
    assert second in (DocumentStatus.PROCESSING, DocumentStatus.COMPLETED)
    assert container.queue.wait_idle(timeout=30)
    assert container.orchestrator.process(document.hash) == DocumentStatus.COMPLETED

    pages = container.store.list_pages(document.hash)
    assert [page.page_number for page in pages] == [1, 2, 3]
    assert metrics_registry.pipeline_snapshot()["pages_completed"] == 3


def test_corrupted_page_fails_document_but_keeps_siblings(make_container, tmp_path):
    worker = ScriptedWorker(fail_pages={2})
    container = make_container(worker)
    document = _upload(container, tmp_path, sequence=3)

    container.orchestrator.process(document.hash)
    assert container.queue.wait_idle(timeout=30)

    final = container.store.find_document(document.hash)
    assert final.status == DocumentStatus.FAILED
    assert "2" in final.processing_error
    assert final.is_searchable is False

    statuses = {page.page_number: page for page in container.store.list_pages(document.hash)}
    assert statuses[1].status == PageStatus.COMPLETED
    assert statuses[3].status == PageStatus.COMPLETED
    assert statuses[2].status == PageStatus.FAILED
    assert statuses[2].attempts == get_settings().page_max_attempts
    assert worker.calls[2] == get_settings().page_max_attempts


def test_retry_reruns_only_failed_pages(make_container, tmp_path):
    worker = ScriptedWorker(fail_pages={2})
    container = make_container(worker)
    document = _upload(container, tmp_path, sequence=4)

    container.orchestrator.process(document.hash)
    assert container.queue.wait_idle(timeout=30)
    assert container.store.find_document(document.hash).status == DocumentStatus.FAILED

    worker.fail_pages.clear()
    assert container.orchestrator.retry_processing(document.hash) == DocumentStatus.PROCESSING
    assert container.queue.wait_idle(timeout=30)

    final = container.store.find_document(document.hash)
    assert final.status == DocumentStatus.COMPLETED
    assert final.processing_error is None
    assert final.is_searchable is True
    assert worker.calls[1] == 1
    assert worker.calls[3] == 1
    assert final.metadata["processing_runs"] == 2

    report = container.orchestrator.get_audit_report(document.hash)
    assert report["summary"]["total_runs"] == 2
    latest, first = report["runs"]
    assert (latest["run_number"], latest["operation"], latest["status"]) == (2, "retry", "completed")
    assert latest["pages_requested"] == 1
    assert (first["operation"], first["status"]) == ("process", "partial")
    assert (first["pages_completed"], first["pages_failed"]) == (2, 1)


def test_cancel_mid_run_keeps_completed_pages(make_container, tmp_path):
    worker = ScriptedWorker(block_from=5)
    container = make_container(worker)
    document = _upload(container, tmp_path, sequence=5, pages=10)

    container.orchestrator.process(document.hash)

    def _completed() -> int:
        return container.store.count_pages_by_status(document.hash).get(PageStatus.COMPLETED, 0)

    _wait_for(lambda: _completed() == 4)
    container.orchestrator.cancel_processing(document.hash)
    worker.gate.set()
    assert container.queue.wait_idle(timeout=30)

    final = container.store.find_document(document.hash)
    assert final.status == DocumentStatus.CANCELLED
    counts = container.store.count_pages_by_status(document.hash)
    assert counts[PageStatus.COMPLETED] == 4
    assert counts[PageStatus.PROCESSING] == 0
    assert counts[PageStatus.PENDING] == 6
    assert worker.calls[9] == 0
    assert worker.calls[10] == 0
    for page in container.store.list_pages(document.hash, statuses=(PageStatus.PENDING,)):
        assert page.content is None

    (run,) = container.store.list_runs(document.hash)
    assert run.status == RunStatus.CANCELLED
    assert run.pages_completed == 4


def test_validation_failure_leaves_document_uploaded(container, tmp_path):
    source = tmp_path / "broken.pdf"
    source.write_bytes(b"this is not a pdf at all")
    document, _ = container.documents.upload(source, "broken.pdf")

    with pytest.raises(InvalidDocument):
        container.orchestrator.process(document.hash)

    stored = container.store.find_document(document.hash)
    assert stored.status == DocumentStatus.UPLOADED
    assert stored.processing_error
    assert container.store.list_pages(document.hash) == []


def test_lifecycle_guards(container, tmp_path):
    with pytest.raises(DocumentNotFound):
        container.orchestrator.retry_processing("missing")

    document = _upload(container, tmp_path, sequence=6)
    with pytest.raises(InvalidState):
        container.orchestrator.retry_processing(document.hash)
    with pytest.raises(InvalidState):
        container.orchestrator.cancel_processing(document.hash)

    container.orchestrator.process(document.hash)
    assert container.queue.wait_idle(timeout=30)
    with pytest.raises(InvalidState):
        container.orchestrator.retry_processing(document.hash)


def test_finalization_happens_exactly_once(container, tmp_path):
    document = _upload(container, tmp_path, sequence=7)
    store = container.store
    assert store.begin_processing(document.hash, 3)
    for number in (1, 2, 3):
        assert store.transition_page(
            document.hash, number, (PageStatus.PENDING,), PageStatus.COMPLETED, content="text"
        )

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(lambda _: container.orchestrator.finalize(document.hash), range(8)))

    assert outcomes.count(DocumentStatus.COMPLETED) == 1
    assert outcomes.count(None) == 7
    assert metrics_registry.pipeline_snapshot()["documents_completed"] == 1


def test_resume_reschedules_stranded_pages(container, tmp_path):
    document = _upload(container, tmp_path, sequence=8)
    store = container.store
    assert store.begin_processing(document.hash, 3)
    # Page 1 was claimed by a worker that died with the previous process.
    assert store.transition_page(document.hash, 1, (PageStatus.PENDING,), PageStatus.PROCESSING)

    assert container.orchestrator.resume_interrupted() == 1
    assert container.queue.wait_idle(timeout=30)

    final = store.find_document(document.hash)
    assert final.status == DocumentStatus.COMPLETED
    assert all(page.status == PageStatus.COMPLETED for page in store.list_pages(document.hash))


def test_duplicate_job_delivery_is_ignored(container, tmp_path):
    document = _upload(container, tmp_path, sequence=9, pages=1)
    container.orchestrator.process(document.hash)
    assert container.queue.wait_idle(timeout=30)

    from pdfviewer.services.jobs import PageJob

    assert container.orchestrator.run_page_job(PageJob(document.hash, 1)) is None
    assert metrics_registry.pipeline_snapshot()["pages_completed"] == 1


def test_search_finds_processed_pages(container, tmp_path):
    texts = [
        "General overview of the plant.",
        "Safety valves must be tested. Safety first.",
        "Valve inventory and safety notes for later.",
    ]
    document = _upload(container, tmp_path, sequence=10, texts=texts)
    container.orchestrator.process(document.hash)
    assert container.queue.wait_idle(timeout=30)

    results = container.search.search_pages(document.hash, "safety valves")
    numbers = [hit["page_number"] for hit in results["data"]]
    assert numbers[0] == 2
    assert 1 not in numbers


class FlakyCalls:
    """Make selected calls to a store method raise ``TransientIOError``."""

    def __init__(self, target, *, fail_when, times: int | None = 1) -> None:
        self.target = target
        self.fail_when = fail_when
        self.times = times
        self.calls = 0
        self.failures = 0
        self._lock = Lock()

    def __call__(self, *args, **kwargs):
        with self._lock:
            self.calls += 1
            fail = (self.times is None or self.failures < self.times) and self.fail_when(
                self.calls, args
            )
            if fail:
                self.failures += 1
        if fail:
            raise TransientIOError("Database is locked")
        return self.target(*args, **kwargs)


def _completes_page(number):
    return lambda _call, args: args[1] == number and args[3] == PageStatus.COMPLETED


def test_store_outage_during_processing_is_retried(container, tmp_path, monkeypatch, caplog):
    document = _upload(container, tmp_path, sequence=11)
    flaky = FlakyCalls(container.store.find_document, fail_when=lambda call, _args: call == 3)
    monkeypatch.setattr(container.store, "find_document", flaky)

    container.orchestrator.process(document.hash)
    assert container.queue.wait_idle(timeout=30)

    assert flaky.failures == 1
    final = container.store.find_document(document.hash)
    assert final.status == DocumentStatus.COMPLETED
    assert all(
        page.status == PageStatus.COMPLETED for page in container.store.list_pages(document.hash)
    )
    assert metrics_registry.pipeline_snapshot()["store_retries"] >= 1
    assert "Page job crashed" not in caplog.text


def test_failed_result_write_is_retried(container, tmp_path, monkeypatch):
    document = _upload(container, tmp_path, sequence=12)
    flaky = FlakyCalls(container.store.transition_page, fail_when=_completes_page(2))
    monkeypatch.setattr(container.store, "transition_page", flaky)

    container.orchestrator.process(document.hash)
    assert container.queue.wait_idle(timeout=30)

    assert flaky.failures == 1
    assert container.store.find_document(document.hash).status == DocumentStatus.COMPLETED
    assert container.store.find_page(document.hash, 2).status == PageStatus.COMPLETED


def test_lasting_store_outage_fails_the_page_and_settles_the_document(
    container, tmp_path, monkeypatch
):
    document = _upload(container, tmp_path, sequence=13)
    flaky = FlakyCalls(container.store.transition_page, fail_when=_completes_page(2), times=None)
    monkeypatch.setattr(container.store, "transition_page", flaky)

    container.orchestrator.process(document.hash)
    assert container.queue.wait_idle(timeout=30)

    assert flaky.failures == get_settings().page_max_attempts
    final = container.store.find_document(document.hash)
    assert final.status == DocumentStatus.FAILED
    assert final.processing_error == "Processing failed for pages: 2"

    page = container.store.find_page(document.hash, 2)
    assert page.status == PageStatus.FAILED
    assert "Metadata store unavailable" in page.processing_error
    assert container.store.count_pages_by_status(document.hash)[PageStatus.COMPLETED] == 2
    snapshot = metrics_registry.pipeline_snapshot()
    assert snapshot["pages_abandoned"] == 1
    assert snapshot["pages_failed"] == 1


def test_invalid_page_file_is_reported_as_a_page_failure(make_container, tmp_path, caplog):
    worker = ScriptedWorker(invalid_pages={2})
    container = make_container(worker)
    document = _upload(container, tmp_path, sequence=14)

    container.orchestrator.process(document.hash)
    assert container.queue.wait_idle(timeout=30)

    final = container.store.find_document(document.hash)
    assert final.status == DocumentStatus.FAILED
    page = container.store.find_page(document.hash, 2)
    assert page.status == PageStatus.FAILED
    assert "failed validation" in page.processing_error
    assert page.attempts == get_settings().page_max_attempts
    assert container.store.find_page(document.hash, 1).status == PageStatus.COMPLETED
    assert "Page job crashed" not in caplog.text

    (run,) = container.store.list_runs(document.hash)
    assert run.status == RunStatus.PARTIAL
    assert run.failure_reason == "Processing failed for pages: 2"


def test_transient_extraction_error_spends_one_attempt(make_container, tmp_path):
    worker = ScriptedWorker(flaky_pages={1})
    container = make_container(worker)
    document = _upload(container, tmp_path, sequence=15)

    container.orchestrator.process(document.hash)
    assert container.queue.wait_idle(timeout=30)

    assert container.store.find_document(document.hash).status == DocumentStatus.COMPLETED
    page = container.store.find_page(document.hash, 1)
    assert page.status == PageStatus.COMPLETED
    assert page.attempts == 2
    assert page.processing_error is None
    assert worker.calls[1] == 2
    assert metrics_registry.pipeline_snapshot()["pages_retried"] == 1
