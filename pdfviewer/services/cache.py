"""Key based TTL cache for document metadata, page content and search results.

The cache is never authoritative: every entry can be rebuilt from the
metadata store or the search index. Backend failures are logged and
reported as a miss so the processing pipeline never depends on the cache
being reachable.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from collections import OrderedDict
from datetime import datetime
from pathlib import Path
from threading import Lock, RLock
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, Protocol

import redis

from ..repositories import MetadataStore
from ..models import PageStatus

if TYPE_CHECKING:
    from ..config import Settings

LOGGER = logging.getLogger(__name__)

DEFAULT_METADATA_TTL = 3600
DEFAULT_PAGE_TTL = 7200
DEFAULT_SEARCH_TTL = 1800


def _json_default(value: Any) -> Any:  # noqa: ANN401 - json fallback hook
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if hasattr(value, "value"):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serialisable")


def generate_cache_key(prefix: str, params: Mapping[str, Any]) -> str:
    """Return ``prefix:<sha256>`` for ``params`` independent of key order."""

    packed = json.dumps(
        params, sort_keys=True, default=_json_default, separators=(",", ":")
    )
    digest = hashlib.sha256(packed.encode("utf-8")).hexdigest()
    return f"{prefix}:{digest}"


class CacheBackend(Protocol):
    """Storage primitive used by :class:`CacheService`."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl: int) -> None: ...

    def delete(self, *keys: str) -> int: ...

    def tag(self, key: str, tags: Iterable[str], ttl: int) -> None: ...

    def tagged_keys(self, tag: str) -> set[str]: ...

    def forget_tag(self, tag: str) -> int: ...

    def clear(self) -> None: ...

    def ping(self) -> bool: ...

    def stats(self) -> dict[str, Any]: ...


class MemoryCacheBackend:
    """Process local LRU cache with per-entry expiry."""

    def __init__(
        self,
        *,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_entries = max(1, max_entries)
        self._clock = clock
        self._lock = RLock()
        self._store: "OrderedDict[str, tuple[float, str]]" = OrderedDict()
        self._tags: dict[str, set[str]] = {}
        self._key_tags: dict[str, set[str]] = {}
        self._evictions = 0

    def _discard(self, key: str) -> bool:
        """Drop ``key`` and unlink it from every tag; caller holds the lock."""

        removed = self._store.pop(key, None) is not None
        for tag in self._key_tags.pop(key, ()):
            keys = self._tags.get(tag)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._tags[tag]
        return removed

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                self._discard(key)
                return None
            self._store.move_to_end(key)
            return value

    def set(self, key: str, value: str, ttl: int) -> None:
        with self._lock:
            self._store.pop(key, None)
            self._store[key] = (self._clock() + max(ttl, 0), value)
            while len(self._store) > self._max_entries:
                oldest = next(iter(self._store))
                self._discard(oldest)
                self._evictions += 1

    def delete(self, *keys: str) -> int:
        with self._lock:
            return sum(1 for key in keys if self._discard(key))

    def tag(self, key: str, tags: Iterable[str], ttl: int) -> None:
        with self._lock:
            if key not in self._store:
                return
            for tag in tags:
                self._tags.setdefault(tag, set()).add(key)
                self._key_tags.setdefault(key, set()).add(tag)

    def tagged_keys(self, tag: str) -> set[str]:
        with self._lock:
            return set(self._tags.get(tag, ()))

    def forget_tag(self, tag: str) -> int:
        with self._lock:
            keys = set(self._tags.get(tag, ()))
            removed = self.delete(*keys)
            self._tags.pop(tag, None)
            return removed

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
            self._tags.clear()
            self._key_tags.clear()

    def ping(self) -> bool:
        return True

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "backend": "memory",
                "entries": len(self._store),
                "tags": len(self._tags),
                "max_entries": self._max_entries,
                "evictions": self._evictions,
            }


class RedisCacheBackend:
    """Redis backed cache; tags are stored as Redis sets."""

    def __init__(
        self,
        *,
        url: str | None = None,
        client: redis.Redis | None = None,
        namespace: str = "pdf_viewer",
    ) -> None:
        self._url = url
        self._client = client
        self._namespace = namespace

    def _redis(self) -> redis.Redis:
        if self._client is None:
            if not self._url:
                raise RuntimeError("RedisCacheBackend requires a url or client")
            self._client = redis.Redis.from_url(self._url, decode_responses=True)
        return self._client

    def get(self, key: str) -> str | None:
        value = self._redis().get(key)
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else str(value)

    def set(self, key: str, value: str, ttl: int) -> None:
        self._redis().set(key, value, ex=max(int(ttl), 1))

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self._redis().delete(*keys))

    def tag(self, key: str, tags: Iterable[str], ttl: int) -> None:
        """Add ``key`` to each tag set and keep the set alive as long as its longest entry."""

        ttl = max(int(ttl), 1)
        tags = list(tags)
        client = self._redis()
        pipeline = client.pipeline()
        for tag in tags:
            pipeline.sadd(tag, key)
        pipeline.execute()
        for tag in tags:
            # -1 means no expiry yet, -2 that the set vanished in between.
            if int(client.ttl(tag)) < ttl:
                client.expire(tag, ttl)

    def tagged_keys(self, tag: str) -> set[str]:
        members = self._redis().smembers(tag) or set()
        return {
            member.decode("utf-8") if isinstance(member, bytes) else str(member)
            for member in members
        }

    def forget_tag(self, tag: str) -> int:
        keys = self.tagged_keys(tag)
        removed = self.delete(*keys) if keys else 0
        self._redis().delete(tag)
        return removed

    def clear(self) -> None:
        client = self._redis()
        batch: list[str] = []
        for key in client.scan_iter(match=f"{self._namespace}:*", count=500):
            batch.append(key)
            if len(batch) >= 500:
                client.delete(*batch)
                batch = []
        if batch:
            client.delete(*batch)

    def ping(self) -> bool:
        return bool(self._redis().ping())

    def stats(self) -> dict[str, Any]:
        client = self._redis()
        return {
            "backend": "redis",
            "keys": int(client.dbsize()),
            "namespace": self._namespace,
        }


class CacheService:
    """High level cache operations used by the pipeline and the query path."""

    def __init__(
        self,
        backend: CacheBackend,
        *,
        store: MetadataStore | None = None,
        prefix: str = "pdf_viewer",
        metadata_ttl: int = DEFAULT_METADATA_TTL,
        page_ttl: int = DEFAULT_PAGE_TTL,
        search_ttl: int = DEFAULT_SEARCH_TTL,
    ) -> None:
        self._backend = backend
        self._store = store
        self._prefix = prefix
        self.metadata_ttl = metadata_ttl
        self.page_ttl = page_ttl
        self.search_ttl = search_ttl
        self._counter_lock = Lock()
        self._counters = {"hits": 0, "misses": 0, "writes": 0, "errors": 0}

    @classmethod
    def from_settings(
        cls, settings: "Settings", *, store: MetadataStore | None = None
    ) -> "CacheService":
        backend: CacheBackend
        if settings.cache_backend == "redis":
            backend = RedisCacheBackend(url=settings.redis_url, namespace=settings.cache_prefix)
        else:
            backend = MemoryCacheBackend(max_entries=settings.cache_max_entries)
        return cls(
            backend,
            store=store,
            prefix=settings.cache_prefix,
            metadata_ttl=settings.cache_metadata_ttl,
            page_ttl=settings.cache_page_ttl,
            search_ttl=settings.cache_search_ttl,
        )

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------
    def generate_cache_key(self, prefix: str, params: Mapping[str, Any]) -> str:
        return generate_cache_key(f"{self._prefix}:{prefix}", params)

    def _metadata_key(self, document_hash: str) -> str:
        return self.generate_cache_key("document_metadata", {"hash": document_hash})

    def _page_key(self, document_hash: str, page_number: int) -> str:
        return self.generate_cache_key(
            "page_content", {"hash": document_hash, "page": int(page_number)}
        )

    def _search_key(self, query_hash: str) -> str:
        return self.generate_cache_key("search_results", {"query": query_hash})

    def _document_tag(self, document_hash: str) -> str:
        return f"{self._prefix}:tag:document:{document_hash}"

    def _search_tag(self) -> str:
        return f"{self._prefix}:tag:search"

    # ------------------------------------------------------------------
    # Primitive helpers
    # ------------------------------------------------------------------
    def _count(self, name: str) -> None:
        with self._counter_lock:
            self._counters[name] += 1

    def _put(self, key: str, value: Any, ttl: int, tags: Iterable[str]) -> bool:
        try:
            payload = json.dumps(value, default=_json_default)
            self._backend.set(key, payload, ttl)
            self._backend.tag(key, tags, ttl)
        except Exception:  # noqa: BLE001
            self._count("errors")
            LOGGER.warning("Cache write failed for %s", key, exc_info=True)
            return False
        self._count("writes")
        return True

    def _fetch(self, key: str) -> Any | None:
        try:
            payload = self._backend.get(key)
        except Exception:  # noqa: BLE001
            self._count("errors")
            LOGGER.warning("Cache read failed for %s", key, exc_info=True)
            return None
        if payload is None:
            self._count("misses")
            return None
        try:
            value = json.loads(payload)
        except ValueError:
            self._count("errors")
            LOGGER.warning("Discarding undecodable cache entry %s", key)
            return None
        self._count("hits")
        return value

    # ------------------------------------------------------------------
    # Documents and pages
    # ------------------------------------------------------------------
    def cache_document_metadata(
        self, document_hash: str, metadata: Mapping[str, Any], ttl: int | None = None
    ) -> bool:
        return self._put(
            self._metadata_key(document_hash),
            dict(metadata),
            self.metadata_ttl if ttl is None else ttl,
            (self._document_tag(document_hash),),
        )

    def get_cached_document_metadata(self, document_hash: str) -> dict[str, Any] | None:
        return self._fetch(self._metadata_key(document_hash))

    def cache_page_content(
        self,
        document_hash: str,
        page_number: int,
        content: Mapping[str, Any],
        ttl: int | None = None,
    ) -> bool:
        return self._put(
            self._page_key(document_hash, page_number),
            dict(content),
            self.page_ttl if ttl is None else ttl,
            (self._document_tag(document_hash),),
        )

    def get_cached_page_content(
        self, document_hash: str, page_number: int
    ) -> dict[str, Any] | None:
        return self._fetch(self._page_key(document_hash, page_number))

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------
    def cache_search_results(
        self, query_hash: str, results: Mapping[str, Any], ttl: int | None = None
    ) -> bool:
        return self._put(
            self._search_key(query_hash),
            dict(results),
            self.search_ttl if ttl is None else ttl,
            (self._search_tag(),),
        )

    def get_cached_search_results(self, query_hash: str) -> dict[str, Any] | None:
        return self._fetch(self._search_key(query_hash))

    # ------------------------------------------------------------------
    # Invalidation and warming
    # ------------------------------------------------------------------
    def invalidate_document_cache(self, document_hash: str) -> bool:
        """Remove the metadata entry and every cached page of ``document_hash``."""

        try:
            self._backend.forget_tag(self._document_tag(document_hash))
            self._backend.delete(self._metadata_key(document_hash))
        except Exception:  # noqa: BLE001
            self._count("errors")
            LOGGER.warning(
                "Cache invalidation failed for document %s", document_hash, exc_info=True
            )
            return False
        return True

    def invalidate_search_cache(self) -> bool:
        try:
            self._backend.forget_tag(self._search_tag())
        except Exception:  # noqa: BLE001
            self._count("errors")
            LOGGER.warning("Search cache invalidation failed", exc_info=True)
            return False
        return True

    def warm_document_cache(self, document_hash: str) -> bool:
        """Populate metadata and every completed page for ``document_hash`` in one pass."""

        if self._store is None:
            return False
        try:
            document = self._store.find_document(document_hash)
            if document is None:
                return False
            pages = self._store.list_pages(document_hash, statuses=(PageStatus.COMPLETED,))
        except Exception:  # noqa: BLE001
            LOGGER.warning("Unable to load %s for cache warming", document_hash, exc_info=True)
            return False

        ok = self.cache_document_metadata(document_hash, document.to_dict())
        for page in pages:
            ok = self.cache_page_content(document_hash, page.page_number, page.to_dict()) and ok
        LOGGER.info(
            "Warmed cache for document %s (%d pages, ok=%s)", document_hash, len(pages), ok
        )
        return ok

    def clear_all_cache(self) -> bool:
        try:
            self._backend.clear()
        except Exception:  # noqa: BLE001
            self._count("errors")
            LOGGER.warning("Clearing the cache failed", exc_info=True)
            return False
        return True

    def ping(self) -> bool:
        try:
            return self._backend.ping()
        except Exception:  # noqa: BLE001
            LOGGER.warning("Cache health probe failed", exc_info=True)
            return False

    def reset_stats(self) -> None:
        with self._counter_lock:
            for name in self._counters:
                self._counters[name] = 0

    def get_cache_stats(self) -> dict[str, Any]:
        with self._counter_lock:
            counters = dict(self._counters)
        lookups = counters["hits"] + counters["misses"]
        try:
            backend = self._backend.stats()
        except Exception:  # noqa: BLE001
            LOGGER.warning("Cache backend stats unavailable", exc_info=True)
            backend = {"available": False}
        return {
            **counters,
            "hit_rate": round(counters["hits"] / lookups, 4) if lookups else 0.0,
            "prefix": self._prefix,
            "ttl": {
                "document_metadata": self.metadata_ttl,
                "page_content": self.page_ttl,
                "search_results": self.search_ttl,
            },
            "backend": backend,
        }


__all__ = [
    "CacheBackend",
    "CacheService",
    "DEFAULT_METADATA_TTL",
    "DEFAULT_PAGE_TTL",
    "DEFAULT_SEARCH_TTL",
    "MemoryCacheBackend",
    "RedisCacheBackend",
    "generate_cache_key",
]
