"""Tests for the cache service and its backends."""

from __future__ import annotations

from typing import Any

from pdfviewer.models import PageStatus
from pdfviewer.services.cache import (
    CacheService,
    MemoryCacheBackend,
    RedisCacheBackend,
    generate_cache_key,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class BrokenBackend(MemoryCacheBackend):
    def get(self, key: str) -> str | None:
        raise ConnectionError("cache offline")

    def set(self, key: str, value: str, ttl: int) -> None:
        raise ConnectionError("cache offline")

    def forget_tag(self, tag: str) -> int:
        raise ConnectionError("cache offline")


class FakeRedis:
    """Just enough of the redis-py client surface for the cache backend."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.sets: dict[str, set[str]] = {}
        self.expiry: dict[str, int] = {}

    def get(self, key: str) -> str | None:
        return self.values.get(key)

    def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.values[key] = value
        if ex is not None:
            self.expiry[key] = ex
        return True

    def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None or self.sets.pop(key, None) is not None:
                removed += 1
        return removed

    def sadd(self, key: str, *members: str) -> int:
        self.sets.setdefault(key, set()).update(members)
        return len(members)

    def smembers(self, key: str) -> set[str]:
        return set(self.sets.get(key, set()))

    def ttl(self, key: str) -> int:
        if key not in self.values and key not in self.sets:
            return -2
        return self.expiry.get(key, -1)

    def expire(self, key: str, seconds: int) -> bool:
        self.expiry[key] = seconds
        return True

    def pipeline(self) -> "FakeRedis":
        return self

    def execute(self) -> list[Any]:
        return []

    def scan_iter(self, match: str, count: int = 10):
        prefix = match.rstrip("*")
        return [key for key in list(self.values) + list(self.sets) if key.startswith(prefix)]

    def ping(self) -> bool:
        return True

    def dbsize(self) -> int:
        return len(self.values) + len(self.sets)


def test_cache_keys_ignore_parameter_order():
    first = generate_cache_key("search", {"q": "pump", "page": 1, "filters": {"a": 1, "b": 2}})
    second = generate_cache_key("search", {"filters": {"b": 2, "a": 1}, "page": 1, "q": "pump"})
    assert first == second
    assert first.startswith("search:")
    assert first != generate_cache_key("search", {"q": "pump", "page": 2})


def test_entries_expire_after_their_ttl():
    clock = FakeClock()
    cache = CacheService(MemoryCacheBackend(clock=clock))

    cache.cache_document_metadata("abc", {"title": "Pump manual"}, ttl=60)
    assert cache.get_cached_document_metadata("abc") == {"title": "Pump manual"}

    clock.now += 61
    assert cache.get_cached_document_metadata("abc") is None
    stats = cache.get_cache_stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["hit_rate"] == 0.5


def test_memory_backend_evicts_least_recently_used():
    backend = MemoryCacheBackend(max_entries=2)
    backend.set("a", "1", 60)
    backend.set("b", "2", 60)
    assert backend.get("a") == "1"
    backend.set("c", "3", 60)

    assert backend.get("b") is None
    assert backend.get("a") == "1"
    assert backend.stats()["evictions"] == 1


def test_document_invalidation_drops_metadata_and_pages_only():
    cache = CacheService(MemoryCacheBackend())
    cache.cache_document_metadata("abc", {"title": "A"})
    cache.cache_page_content("abc", 1, {"content": "one"})
    cache.cache_page_content("abc", 2, {"content": "two"})
    cache.cache_page_content("xyz", 1, {"content": "other"})
    cache.cache_search_results("q1", {"data": []})

    assert cache.invalidate_document_cache("abc")

    assert cache.get_cached_document_metadata("abc") is None
    assert cache.get_cached_page_content("abc", 1) is None
    assert cache.get_cached_page_content("abc", 2) is None
    assert cache.get_cached_page_content("xyz", 1) == {"content": "other"}
    assert cache.get_cached_search_results("q1") == {"data": []}

    assert cache.invalidate_search_cache()
    assert cache.get_cached_search_results("q1") is None


def test_backend_failures_are_reported_as_misses(caplog):
    cache = CacheService(BrokenBackend())

    assert cache.cache_document_metadata("abc", {"title": "A"}) is False
    assert cache.get_cached_document_metadata("abc") is None
    assert cache.invalidate_document_cache("abc") is False
    assert cache.get_cache_stats()["errors"] == 3
    assert "Cache read failed" in caplog.text


def test_warm_document_cache_loads_completed_pages(store, make_document):
    document = make_document()
    store.begin_processing(document.hash, 2)
    store.transition_page(
        document.hash, 1, (PageStatus.PENDING,), PageStatus.COMPLETED, content="first page"
    )
    cache = CacheService(MemoryCacheBackend(), store=store)

    assert cache.warm_document_cache(document.hash)

    assert cache.get_cached_document_metadata(document.hash)["hash"] == document.hash
    assert cache.get_cached_page_content(document.hash, 1)["content"] == "first page"
    assert cache.get_cached_page_content(document.hash, 2) is None
    assert cache.warm_document_cache("missing") is False


def test_redis_backend_uses_tags_and_namespace():
    client = FakeRedis()
    backend = RedisCacheBackend(client=client, namespace="viewer")
    cache = CacheService(backend, prefix="viewer")

    cache.cache_page_content("abc", 1, {"content": "one"}, ttl=0)
    key = next(iter(client.values))
    assert key.startswith("viewer:page_content:")
    assert client.expiry[key] == 1
    assert cache.get_cached_page_content("abc", 1) == {"content": "one"}

    assert cache.invalidate_document_cache("abc")
    assert client.values == {}

    cache.cache_search_results("q", {"data": [1]})
    assert cache.clear_all_cache()
    assert client.dbsize() == 0
    assert cache.ping()
    assert cache.get_cache_stats()["backend"]["backend"] == "redis"


def test_memory_backend_prunes_tags_of_evicted_and_expired_keys():
    clock = FakeClock()
    backend = MemoryCacheBackend(max_entries=2, clock=clock)
    cache = CacheService(backend)

    cache.cache_page_content("abc", 1, {"content": "one"}, ttl=10)
    cache.cache_page_content("abc", 2, {"content": "two"}, ttl=100)
    cache.cache_page_content("xyz", 1, {"content": "three"}, ttl=100)

    assert backend.stats()["evictions"] == 1
    assert len(backend.tagged_keys("pdf_viewer:tag:document:abc")) == 1

    clock.now += 101
    assert cache.get_cached_page_content("abc", 2) is None
    assert cache.get_cached_page_content("xyz", 1) is None
    assert backend.stats()["tags"] == 0
    assert backend.tagged_keys("pdf_viewer:tag:document:abc") == set()


def test_redis_tag_sets_expire_with_their_longest_entry():
    client = FakeRedis()
    cache = CacheService(RedisCacheBackend(client=client, namespace="viewer"), prefix="viewer")
    tag = "viewer:tag:document:abc"

    cache.cache_document_metadata("abc", {"title": "A"}, ttl=60)
    assert client.expiry[tag] == 60

    cache.cache_page_content("abc", 1, {"content": "one"}, ttl=600)
    assert client.expiry[tag] == 600

    cache.cache_document_metadata("abc", {"title": "B"}, ttl=30)
    assert client.expiry[tag] == 600
