"""Page level full text search with versioned, atomically published indexes."""

from __future__ import annotations

import html
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from threading import RLock
from typing import Any, Iterable, Mapping

import numpy as np
from rank_bm25 import BM25Plus
from rapidfuzz import fuzz, process

from ..repositories import DocumentRecord, MetadataStore
from ..utils.errors import DocumentNotFound, StateConflictError
from ..utils.logging import TRACE_LEVEL
from .cache import CacheService, generate_cache_key

LOGGER = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"[\w\-']+")
_TAGS = re.compile(r"<[^>]+>")
_UNSAFE_QUERY_CHARS = re.compile(r"[^\w\s\-\"']", re.UNICODE)
_WHITESPACE = re.compile(r"\s+")

FIELD_MATCH_BOOST = 4.0
PHRASE_MATCH_BOOST = 2.0
POSITION_WEIGHT = 0.5
SNIPPETS_PER_DOCUMENT = 3


def _tokenize(text: str) -> list[str]:
    return [
        token
        for token in (
            match.group(0).lower().strip("-'") for match in TOKEN_PATTERN.finditer(text or "")
        )
        if token
    ]


def _normalise(text: str) -> str:
    return _WHITESPACE.sub(" ", (text or "").lower()).strip()


def _metadata_text(metadata: Mapping[str, Any] | None) -> str:
    if not metadata:
        return ""
    parts: list[str] = []
    for key in sorted(metadata):
        value = metadata[key]
        if isinstance(value, (str, int, float)):
            parts.append(str(value))
    return " ".join(parts)


@dataclass(frozen=True, slots=True)
class IndexedDocument:
    """Document level fields that rank above body text."""

    document_hash: str
    title: str = ""
    metadata_text: str = ""
    created_by: str | None = None
    created_at: str | None = None
    field_tokens: frozenset[str] = frozenset()
    field_text: str = ""

    @classmethod
    def from_record(cls, record: DocumentRecord) -> "IndexedDocument":
        return cls.build(
            record.hash,
            title=record.title or record.original_filename,
            metadata=record.metadata,
            created_by=record.created_by,
            created_at=record.created_at.isoformat() if record.created_at else None,
        )

    @classmethod
    def build(
        cls,
        document_hash: str,
        *,
        title: str = "",
        metadata: Mapping[str, Any] | None = None,
        created_by: str | None = None,
        created_at: str | None = None,
    ) -> "IndexedDocument":
        metadata_text = _metadata_text(metadata)
        combined = f"{title} {metadata_text}"
        return cls(
            document_hash=document_hash,
            title=title,
            metadata_text=metadata_text,
            created_by=created_by,
            created_at=created_at,
            field_tokens=frozenset(_tokenize(combined)),
            field_text=_normalise(combined),
        )


@dataclass(frozen=True, slots=True)
class IndexedPage:
    """Searchable representation of one page."""

    document_hash: str
    page_number: int
    content: str
    normalised: str
    tokens: tuple[str, ...]

    @classmethod
    def build(cls, document_hash: str, page_number: int, content: str) -> "IndexedPage":
        return cls(
            document_hash=document_hash,
            page_number=page_number,
            content=content or "",
            normalised=_normalise(content),
            tokens=tuple(_tokenize(content)),
        )

    @property
    def key(self) -> tuple[str, int]:
        return (self.document_hash, self.page_number)


@dataclass
class _IndexState:
    """One complete generation of the inverted index."""

    pages: dict[tuple[str, int], IndexedPage] = field(default_factory=dict)
    documents: dict[str, IndexedDocument] = field(default_factory=dict)
    postings: dict[str, set[tuple[str, int]]] = field(default_factory=dict)

    def upsert(self, page: IndexedPage, document: IndexedDocument) -> None:
        self._drop_page(page.key)
        self.pages[page.key] = page
        self.documents[page.document_hash] = document
        for token in set(page.tokens):
            self.postings.setdefault(token, set()).add(page.key)

    def _drop_page(self, key: tuple[str, int]) -> None:
        previous = self.pages.pop(key, None)
        if previous is None:
            return
        for token in set(previous.tokens):
            keys = self.postings.get(token)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self.postings[token]

    def update_document(self, document: IndexedDocument) -> bool:
        if document.document_hash not in self.documents:
            return False
        self.documents[document.document_hash] = document
        return True

    def remove_document(self, document_hash: str) -> int:
        keys = [key for key in self.pages if key[0] == document_hash]
        for key in keys:
            self._drop_page(key)
        self.documents.pop(document_hash, None)
        return len(keys)


class SearchIndex:
    """Thread safe inverted index whose rebuilds are published by reference swap.

    Incremental updates mutate the live generation under a lock. A rebuild
    fills a fresh generation off to the side while every concurrent update
    is journaled; the journal is replayed onto the new generation and the
    generation is swapped in under the same lock, so readers observe either
    the old index or the complete new one.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._state = _IndexState()
        self._version = 0
        self._journal: list[tuple[str, tuple[Any, ...]]] | None = None

    @property
    def version(self) -> int:
        with self._lock:
            return self._version

    def upsert(self, page: IndexedPage, document: IndexedDocument) -> None:
        with self._lock:
            self._state.upsert(page, document)
            if self._journal is not None:
                self._journal.append(("upsert", (page, document)))
            self._version += 1

    def update_document(self, document: IndexedDocument) -> bool:
        """Replace the title and metadata fields of an already indexed document."""

        with self._lock:
            updated = self._state.update_document(document)
            if self._journal is not None:
                self._journal.append(("document", (document,)))
            if updated:
                self._version += 1
            return updated

    def remove_document(self, document_hash: str) -> int:
        with self._lock:
            removed = self._state.remove_document(document_hash)
            if self._journal is not None:
                self._journal.append(("remove", (document_hash,)))
            self._version += 1
            return removed

    def begin_rebuild(self) -> None:
        with self._lock:
            if self._journal is not None:
                raise StateConflictError("A search index rebuild is already running")
            self._journal = []

    def abort_rebuild(self) -> None:
        with self._lock:
            self._journal = None

    def publish(self, pages: Iterable[tuple[IndexedPage, IndexedDocument]]) -> int:
        """Swap in a generation built from ``pages`` plus any journaled updates."""

        fresh = _IndexState()
        for page, document in pages:
            fresh.upsert(page, document)
        with self._lock:
            for operation, args in self._journal or ():
                if operation == "upsert":
                    fresh.upsert(*args)
                elif operation == "document":
                    fresh.update_document(*args)
                else:
                    fresh.remove_document(*args)
            self._state = fresh
            self._journal = None
            self._version += 1
            return len(fresh.pages)

    def candidates(
        self, terms: Iterable[str], document_hash: str | None = None
    ) -> list[tuple[IndexedPage, IndexedDocument]]:
        with self._lock:
            state = self._state
            keys: set[tuple[str, int]] = set()
            for term in terms:
                keys.update(state.postings.get(term, ()))
            if document_hash is not None:
                keys = {key for key in keys if key[0] == document_hash}
            return [
                (state.pages[key], state.documents[key[0]])
                for key in sorted(keys)
            ]

    def pages_for(self, document_hash: str) -> list[tuple[IndexedPage, IndexedDocument]]:
        with self._lock:
            state = self._state
            document = state.documents.get(document_hash)
            if document is None:
                return []
            return [
                (page, document)
                for key, page in sorted(state.pages.items())
                if key[0] == document_hash
            ]

    def documents_matching_fields(self, terms: Iterable[str]) -> list[IndexedDocument]:
        wanted = set(terms)
        with self._lock:
            return [
                document
                for document in self._state.documents.values()
                if wanted & document.field_tokens
            ]

    def vocabulary(self) -> dict[str, int]:
        with self._lock:
            return {token: len(keys) for token, keys in self._state.postings.items()}

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "index_version": self._version,
                "indexed_entries": len(self._state.pages),
                "indexed_documents": len(self._state.documents),
                "vocabulary_size": len(self._state.postings),
            }


@dataclass(frozen=True, slots=True)
class _ScoredPage:
    page: IndexedPage
    document: IndexedDocument
    score: float
    field_match: bool


class SearchService:
    """Index completed pages and answer ranked, paginated queries."""

    def __init__(
        self,
        store: MetadataStore,
        *,
        cache: CacheService | None = None,
        index: SearchIndex | None = None,
        min_query_length: int = 3,
        max_query_length: int = 255,
        per_page: int = 15,
        snippet_length: int = 200,
        highlight_tag: str = "mark",
    ) -> None:
        self._store = store
        self._cache = cache
        self.index = index or SearchIndex()
        self.min_query_length = min_query_length
        self.max_query_length = max_query_length
        self.per_page = per_page
        self.snippet_length = snippet_length
        self.highlight_tag = highlight_tag

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------
    def index_page(
        self,
        document_hash: str,
        page_number: int,
        content: str,
        *,
        document: DocumentRecord | None = None,
    ) -> bool:
        """Upsert the searchable text of one page."""

        try:
            record = document or self._store.find_document(document_hash)
            if record is None:
                LOGGER.warning("Not indexing page %s of unknown document %s", page_number, document_hash)
                return False
            self.index.upsert(
                IndexedPage.build(document_hash, page_number, content),
                IndexedDocument.from_record(record),
            )
            self._store.mark_pages_indexed(document_hash, [page_number], True)
        except Exception:  # noqa: BLE001
            LOGGER.warning(
                "Indexing failed for page %s of %s", page_number, document_hash, exc_info=True
            )
            return False
        if self._cache is not None:
            self._cache.invalidate_search_cache()
        return True

    def refresh_document(self, document: DocumentRecord) -> bool:
        """Re-read title and metadata boosts after a document was edited."""

        updated = self.index.update_document(IndexedDocument.from_record(document))
        if updated and self._cache is not None:
            self._cache.invalidate_search_cache()
        return updated

    def remove_from_index(self, document_hash: str) -> bool:
        removed = self.index.remove_document(document_hash)
        try:
            self._store.mark_pages_indexed(document_hash, None, False)
            self._store.refresh_searchable(document_hash)
        except Exception:  # noqa: BLE001
            LOGGER.warning("Unable to clear index flags for %s", document_hash, exc_info=True)
        if self._cache is not None:
            self._cache.invalidate_search_cache()
        LOGGER.info("Removed %d pages of %s from the search index", removed, document_hash)
        return True

    def rebuild_index(self) -> bool:
        """Repopulate the whole index from stored page content."""

        try:
            self.index.begin_rebuild()
        except StateConflictError:
            LOGGER.info("Search index rebuild already in progress")
            return False
        try:
            rows = self._store.completed_pages()
            entries: list[tuple[IndexedPage, IndexedDocument]] = []
            documents: dict[str, IndexedDocument] = {}
            for record, page in rows:
                if page.content is None:
                    continue
                indexed_document = documents.get(record.hash)
                if indexed_document is None:
                    indexed_document = IndexedDocument.from_record(record)
                    documents[record.hash] = indexed_document
                entries.append(
                    (IndexedPage.build(record.hash, page.page_number, page.content), indexed_document)
                )
        except Exception:  # noqa: BLE001
            self.index.abort_rebuild()
            LOGGER.error("Search index rebuild failed", exc_info=True)
            return False

        total = self.index.publish(entries)
        for document_hash in documents:
            try:
                self._store.mark_pages_indexed(
                    document_hash,
                    [page.page_number for page, _ in entries if page.document_hash == document_hash],
                    True,
                )
                self._store.refresh_searchable(document_hash)
            except Exception:  # noqa: BLE001
                LOGGER.warning("Unable to refresh index flags for %s", document_hash, exc_info=True)
        if self._cache is not None:
            self._cache.invalidate_search_cache()
        LOGGER.info("Search index rebuilt with %d pages across %d documents", total, len(documents))
        return True

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------
    def sanitize_query(self, query: str) -> str:
        cleaned = _TAGS.sub(" ", query or "")
        cleaned = _UNSAFE_QUERY_CHARS.sub(" ", cleaned)
        cleaned = _WHITESPACE.sub(" ", cleaned).strip()
        return cleaned[: self.max_query_length].strip()

    def _query_terms(self, query: str) -> tuple[list[str], str]:
        phrase = _normalise(query.replace('"', " "))
        terms = list(dict.fromkeys(_tokenize(phrase)))
        return terms, phrase

    def _score(
        self,
        candidates: list[tuple[IndexedPage, IndexedDocument]],
        terms: list[str],
        phrase: str,
    ) -> list[_ScoredPage]:
        if not candidates:
            return []
        corpus = [list(page.tokens) or [""] for page, _ in candidates]
        raw = np.asarray(BM25Plus(corpus).get_scores(terms), dtype=np.float64)
        peak = float(raw.max()) if raw.size else 0.0
        normalised = raw / peak if peak > 0 else np.zeros_like(raw)
        multi_term = len(terms) > 1

        scored: list[_ScoredPage] = []
        for (page, document), tf_score in zip(candidates, normalised):
            page_terms = set(page.tokens)
            coverage = sum(1 for term in terms if term in page_terms) / len(terms)

            first = min(
                (index for index in (page.normalised.find(term) for term in terms) if index >= 0),
                default=-1,
            )
            position = 0.0
            if first >= 0 and page.normalised:
                position = POSITION_WEIGHT * (1.0 - first / len(page.normalised))

            phrase_match = multi_term and phrase in page.normalised
            field_match = bool(set(terms) & document.field_tokens)

            score = float(tf_score) + coverage + position
            if phrase_match:
                score += PHRASE_MATCH_BOOST
            if field_match:
                score += FIELD_MATCH_BOOST
                if multi_term and phrase in document.field_text:
                    score += PHRASE_MATCH_BOOST
            scored.append(
                _ScoredPage(page=page, document=document, score=round(score, 6), field_match=field_match)
            )
        scored.sort(key=lambda item: (-item.score, item.page.document_hash, item.page.page_number))
        LOGGER.log(TRACE_LEVEL, "Scored %d candidates for terms %s", len(scored), terms)
        return scored

    def _empty_results(self, query: str, page: int, per_page: int) -> dict[str, Any]:
        return {
            "query": query,
            "data": [],
            "meta": {"current_page": page, "per_page": per_page, "total": 0, "last_page": 1},
        }

    def _paginate(
        self, query: str, items: list[dict[str, Any]], page: int, per_page: int
    ) -> dict[str, Any]:
        total = len(items)
        start = (page - 1) * per_page
        return {
            "query": query,
            "data": items[start : start + per_page],
            "meta": {
                "current_page": page,
                "per_page": per_page,
                "total": total,
                "last_page": max(1, -(-total // per_page)),
            },
        }

    def _cached(self, params: Mapping[str, Any]) -> tuple[str, dict[str, Any] | None]:
        query_hash = generate_cache_key("search", params)
        if self._cache is None:
            return query_hash, None
        return query_hash, self._cache.get_cached_search_results(query_hash)

    def _remember(self, query_hash: str, results: dict[str, Any]) -> None:
        if self._cache is not None:
            self._cache.cache_search_results(query_hash, results)

    def _page_hit(self, scored: _ScoredPage, query: str) -> dict[str, Any]:
        snippet = self.generate_snippet(scored.page.content, query, self.snippet_length)
        return {
            "document_hash": scored.page.document_hash,
            "page_number": scored.page.page_number,
            "relevance_score": scored.score,
            "snippet": snippet,
            "highlighted_snippet": self.highlight_content(snippet, query),
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def search_pages(
        self,
        document_hash: str,
        query: str,
        page: int = 1,
        per_page: int | None = None,
    ) -> dict[str, Any]:
        """Return pages of ``document_hash`` ranked by relevance to ``query``."""

        if self._store.find_document(document_hash) is None:
            raise DocumentNotFound(
                f"Document with hash {document_hash} not found", extra={"hash": document_hash}
            )
        page = max(1, page)
        per_page = max(1, per_page or self.per_page)
        query = self.sanitize_query(query)
        if len(query) < self.min_query_length:
            return self._empty_results(query, page, per_page)

        query_hash, cached = self._cached(
            {"scope": document_hash, "query": query, "page": page, "per_page": per_page}
        )
        if cached is not None:
            return cached

        terms, phrase = self._query_terms(query)
        scored = self._score(self.index.candidates(terms, document_hash), terms, phrase)
        results = self._paginate(
            query, [self._page_hit(item, query) for item in scored], page, per_page
        )
        results["document_hash"] = document_hash
        self._remember(query_hash, results)
        return results

    def search_documents(
        self,
        query: str,
        filters: Mapping[str, Any] | None = None,
        page: int = 1,
        per_page: int | None = None,
    ) -> dict[str, Any]:
        """Return documents ranked by their best matching page or field."""

        filters = {key: value for key, value in (filters or {}).items() if value not in (None, "")}
        page = max(1, page)
        per_page = max(1, per_page or self.per_page)
        query = self.sanitize_query(query)
        if len(query) < self.min_query_length:
            return self._empty_results(query, page, per_page)

        query_hash, cached = self._cached(
            {"scope": "*", "query": query, "filters": filters, "page": page, "per_page": per_page}
        )
        if cached is not None:
            return cached

        terms, phrase = self._query_terms(query)
        candidates = self.index.candidates(terms)
        seen = {document.document_hash for _, document in candidates}
        for document in self.index.documents_matching_fields(terms):
            if document.document_hash not in seen:
                # Title or metadata hit without a body hit: rank on its first page.
                candidates.extend(self.index.pages_for(document.document_hash)[:1])
                seen.add(document.document_hash)
        candidates = [
            (indexed_page, document)
            for indexed_page, document in candidates
            if self._matches_filters(document, filters)
        ]

        grouped: dict[str, list[_ScoredPage]] = {}
        for item in self._score(candidates, terms, phrase):
            grouped.setdefault(item.document.document_hash, []).append(item)

        documents: list[dict[str, Any]] = []
        for document_hash, hits in grouped.items():
            body_hits = [
                hit for hit in hits if set(terms) & set(hit.page.tokens)
            ]
            documents.append(
                {
                    "document_hash": document_hash,
                    "title": hits[0].document.title,
                    "relevance_score": hits[0].score,
                    "title_match": hits[0].field_match,
                    "matching_pages": len(body_hits),
                    "pages": [
                        self._page_hit(hit, query) for hit in body_hits[:SNIPPETS_PER_DOCUMENT]
                    ],
                }
            )
        documents.sort(key=lambda item: (-item["relevance_score"], item["document_hash"]))

        results = self._paginate(query, documents, page, per_page)
        self._remember(query_hash, results)
        return results

    @staticmethod
    def _matches_filters(document: IndexedDocument, filters: Mapping[str, Any]) -> bool:
        if "created_by" in filters and document.created_by != filters["created_by"]:
            return False
        created_at = document.created_at or ""
        if "date_from" in filters and created_at < str(filters["date_from"]):
            return False
        if "date_to" in filters and created_at > str(filters["date_to"]):
            return False
        if "document_hash" in filters and document.document_hash != filters["document_hash"]:
            return False
        return True

    def get_suggestions(self, query: str, limit: int = 10) -> list[str]:
        """Return indexed words that complete or closely resemble ``query``."""

        query = self.sanitize_query(query).lower()
        if len(query) < 2 or limit <= 0:
            return []
        vocabulary = self.index.vocabulary()
        completions = sorted(
            (
                word
                for word in vocabulary
                if query in word and len(query) < len(word) <= 50
            ),
            key=lambda word: (not word.startswith(query), -vocabulary[word], word),
        )
        suggestions = completions[:limit]
        if len(suggestions) < limit and vocabulary:
            remaining = [word for word in vocabulary if word not in suggestions and word != query]
            for word, _score, _index in process.extract(
                query, remaining, scorer=fuzz.ratio, limit=limit - len(suggestions), score_cutoff=75
            ):
                suggestions.append(word)
        return suggestions

    def get_search_stats(self) -> dict[str, Any]:
        page_stats = self._store.page_stats()
        return {
            "total_documents": self._store.list_documents(per_page=1).total,
            "searchable_documents": self._store.list_documents(
                {"is_searchable": True}, per_page=1
            ).total,
            **page_stats,
            **self.index.stats(),
        }

    # ------------------------------------------------------------------
    # Text helpers
    # ------------------------------------------------------------------
    def highlight_content(self, content: str, query: str) -> str:
        """Escape ``content`` and wrap every query term in the highlight tag."""

        if not content or not query:
            return content or ""
        escaped = html.escape(content, quote=False)
        terms = sorted(
            {term for term in self.sanitize_query(query).replace('"', " ").split() if len(term) >= 2},
            key=len,
            reverse=True,
        )
        if not terms:
            return escaped
        pattern = re.compile(
            "(" + "|".join(re.escape(html.escape(term, quote=False)) for term in terms) + ")",
            re.IGNORECASE,
        )
        tag = self.highlight_tag
        return pattern.sub(lambda match: f"<{tag}>{match.group(0)}</{tag}>", escaped)

    def generate_snippet(self, content: str, query: str, length: int | None = None) -> str:
        """Return an excerpt around the first match that never cuts a word in half."""

        length = max(1, length or self.snippet_length)
        if not content or not query:
            return ""
        text = _WHITESPACE.sub(" ", _TAGS.sub(" ", content)).strip()
        lowered = text.lower()
        cleaned_query = self.sanitize_query(query).replace('"', " ").strip().lower()

        position = lowered.find(cleaned_query) if cleaned_query else -1
        if position < 0:
            for term in cleaned_query.split():
                position = lowered.find(term)
                if position >= 0:
                    break

        start = 0 if position < 0 else max(0, position - length // 2)
        while start > 0 and not text[start - 1].isspace():
            start -= 1
        end = min(len(text), start + length)
        while end < len(text) and not text[end].isspace():
            end += 1

        snippet = text[start:end].strip()
        if start > 0:
            snippet = "..." + snippet
        if end < len(text):
            snippet = snippet + "..."
        return snippet


__all__ = [
    "IndexedDocument",
    "IndexedPage",
    "SearchIndex",
    "SearchService",
]
