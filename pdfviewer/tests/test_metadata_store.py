"""Tests for the SQL metadata store and its conditional updates."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from pdfviewer.models import DocumentStatus, PageStatus, RunStatus
from pdfviewer.utils.errors import StateConflictError


def test_begin_processing_creates_contiguous_pending_pages(store, make_document):
    document = make_document()

    assert store.begin_processing(document.hash, 4, {"pdf": {"author": "QA"}})

    stored = store.find_document(document.hash)
    assert stored.status == DocumentStatus.PROCESSING
    assert stored.page_count == 4
    assert stored.metadata["pdf"] == {"author": "QA"}
    assert stored.processing_started_at is not None
    pages = store.list_pages(document.hash)
    assert [page.page_number for page in pages] == [1, 2, 3, 4]
    assert {page.status for page in pages} == {PageStatus.PENDING}


def test_begin_processing_only_wins_once(store, make_document):
    document = make_document()

    with ThreadPoolExecutor(max_workers=4) as pool:
        outcomes = list(pool.map(lambda _: store.begin_processing(document.hash, 3), range(4)))

    assert outcomes.count(True) == 1
    assert len(store.list_pages(document.hash)) == 3


def test_begin_processing_refuses_a_different_page_count(store, make_document):
    document = make_document(page_count=2)
    assert store.begin_processing(document.hash, 5) is False
    assert store.find_document(document.hash).status == DocumentStatus.UPLOADED


def test_page_claim_is_exclusive(store, make_document):
    document = make_document()
    store.begin_processing(document.hash, 1)

    with ThreadPoolExecutor(max_workers=6) as pool:
        claims = list(
            pool.map(
                lambda _: store.transition_page(
                    document.hash, 1, (PageStatus.PENDING,), PageStatus.PROCESSING
                ),
                range(6),
            )
        )

    assert claims.count(True) == 1
    assert store.find_page(document.hash, 1).status == PageStatus.PROCESSING


def test_transition_document_respects_cancel_flag(store, make_document):
    document = make_document()
    store.begin_processing(document.hash, 1)
    assert store.request_cancel(document.hash)

    assert not store.transition_document(
        document.hash,
        (DocumentStatus.PROCESSING,),
        DocumentStatus.COMPLETED,
        cancel_requested=False,
    )
    assert store.transition_document(
        document.hash,
        (DocumentStatus.PROCESSING,),
        DocumentStatus.CANCELLED,
        cancel_requested=True,
    )
    assert store.find_document(document.hash).status == DocumentStatus.CANCELLED
    assert store.request_cancel(document.hash) is False


def test_reset_pages_returns_moved_page_numbers(store, make_document):
    document = make_document()
    store.begin_processing(document.hash, 3)
    for number in (1, 3):
        store.transition_page(document.hash, number, (PageStatus.PENDING,), PageStatus.PROCESSING)
        store.transition_page(
            document.hash,
            number,
            (PageStatus.PROCESSING,),
            PageStatus.FAILED,
            processing_error="boom",
            attempts=3,
        )

    assert store.reset_pages(document.hash, (PageStatus.FAILED,)) == [1, 3]
    page = store.find_page(document.hash, 1)
    assert page.status == PageStatus.PENDING
    assert page.attempts == 0
    assert page.processing_error is None
    assert store.reset_pages(document.hash, (PageStatus.FAILED,)) == []


def test_refresh_searchable_requires_completion_and_indexing(store, make_document):
    document = make_document()
    store.begin_processing(document.hash, 2)
    for number in (1, 2):
        store.transition_page(document.hash, number, (PageStatus.PENDING,), PageStatus.COMPLETED)
    store.transition_document(document.hash, (DocumentStatus.PROCESSING,), DocumentStatus.COMPLETED)

    assert store.refresh_searchable(document.hash) is False
    store.mark_pages_indexed(document.hash, [1], True)
    assert store.refresh_searchable(document.hash) is False
    store.mark_pages_indexed(document.hash, None, True)
    assert store.refresh_searchable(document.hash) is True
    assert store.find_document(document.hash).is_searchable is True


def test_duplicate_hash_is_a_conflict(store, make_document):
    make_document()
    with pytest.raises(StateConflictError):
        make_document()


def test_status_changes_must_use_transitions(store, make_document):
    document = make_document()
    with pytest.raises(ValueError):
        store.update_document_fields(document.hash, status="completed")


def test_delete_cascades_to_pages(store, make_document):
    document = make_document()
    store.begin_processing(document.hash, 2)

    assert store.delete_document(document.hash) is True
    assert store.find_document(document.hash) is None
    assert store.list_pages(document.hash) == []
    assert store.delete_document(document.hash) is False


def test_list_documents_filters_and_paginates(store, make_document):
    make_document("1" * 64, title="Boiler manual", created_by="ana")
    make_document("2" * 64, title="Pump manual", created_by="ben")
    make_document("3" * 64, title="Site plan", created_by="ana")

    everything = store.list_documents(per_page=2)
    assert everything.total == 3
    assert everything.last_page == 2
    assert len(everything.items) == 2

    manuals = store.list_documents({"search": "manual"})
    assert {item.hash for item in manuals.items} == {"1" * 64, "2" * 64}
    assert store.list_documents({"created_by": "ana"}).total == 2
    assert store.list_documents({"status": "completed"}).total == 0


def test_counts_and_page_stats(store, make_document):
    document = make_document()
    store.begin_processing(document.hash, 2)
    store.transition_page(
        document.hash, 1, (PageStatus.PENDING,), PageStatus.COMPLETED, content="hello"
    )

    counts = store.count_pages_by_status(document.hash)
    assert counts[PageStatus.COMPLETED] == 1
    assert counts[PageStatus.PENDING] == 1
    assert store.count_documents_by_status()[DocumentStatus.PROCESSING] == 1
    assert store.page_stats() == {"total_pages": 2, "indexed_pages": 0, "total_content_size": 5}
    assert store.ping() is True


def test_processing_run_counts_pages_and_derives_its_outcome(store, make_document):
    document = make_document()
    store.begin_processing(document.hash, 3)

    run = store.start_run(document.hash, 1, "process", 3)
    assert run.status == RunStatus.RUNNING
    assert store.start_run(document.hash, 1, "process", 3).pages_requested == 3

    assert store.record_run_page(document.hash, 1, True)
    assert store.record_run_page(document.hash, 1, True)
    assert store.record_run_page(document.hash, 1, False)

    finished = store.finish_run(document.hash, 1, failure_reason="Processing failed for pages: 3")
    assert finished.status == RunStatus.PARTIAL
    assert (finished.pages_completed, finished.pages_failed) == (2, 1)
    assert finished.success_rate == 66.67
    assert finished.duration_seconds is not None
    assert store.finish_run(document.hash, 1) is None
    assert store.record_run_page(document.hash, 1, True) is False

    store.start_run(document.hash, 2, "retry", 1)
    store.record_run_page(document.hash, 2, True)
    assert store.finish_run(document.hash, 2).status == RunStatus.COMPLETED

    runs = store.list_runs(document.hash)
    assert [(run.run_number, run.operation) for run in runs] == [(1, "process"), (2, "retry")]
    counts = store.count_runs_by_status()
    assert counts[RunStatus.PARTIAL] == 1
    assert counts[RunStatus.COMPLETED] == 1


def test_cancelled_and_empty_runs(store, make_document):
    document = make_document()
    store.begin_processing(document.hash, 2)
    store.start_run(document.hash, 1, "process", 2)
    assert store.finish_run(document.hash, 1, cancelled=True).status == RunStatus.CANCELLED

    assert store.start_run("missing", 1, "process", 1) is None
    assert store.list_runs("missing") == []

    assert store.delete_document(document.hash)
    assert store.count_runs_by_status()[RunStatus.CANCELLED] == 0
