"""Tests for the in-memory performance cache."""

from unittest.mock import MagicMock

import pytest

from searchmatic import cache as cache_module
from searchmatic.cache import PerformanceCache, cache_keys, invalidate_prefix, invalidate_project, with_cache


@pytest.fixture
def cache():
    return PerformanceCache(ttl_seconds=60, max_size=3)


class TestPerformanceCache:
    """Tests for PerformanceCache."""

    def test_get_and_set(self, cache):
        cache.set("a", {"value": 1})
        assert cache.get("a") == {"value": 1}
        assert cache.get("missing", "fallback") == "fallback"
        assert cache.has("a")
        assert not cache.has("missing")

    def test_expired_entries_are_dropped(self, cache):
        """Test that an expired entry reads as missing and is removed."""
        cache.set("old", "stale", ttl=-1)

        assert cache.stats()["expired"] == 1
        assert cache.get("old") is None
        assert cache.size() == 0

    def test_lru_eviction(self, cache):
        """Test that reading an entry protects it from eviction."""
        for key in ("a", "b", "c"):
            cache.set(key, key)
        cache.get("a")
        cache.set("d", "d")

        assert cache.keys() == ["c", "a", "d"]

    def test_delete_and_clear(self, cache):
        cache.set("a", 1)
        assert cache.delete("a")
        assert not cache.delete("a")

        cache.set("b", 2)
        cache.get("b")
        cache.clear()
        assert cache.size() == 0
        assert cache.stats()["hits"] == 0

    def test_stats(self, cache):
        cache.set("a", 1)
        cache.get("a")
        cache.get("a")
        cache.get("b")

        stats = cache.stats()
        assert stats["total"] == 1
        assert stats["valid"] == 1
        assert stats["hits"] == 2
        assert stats["misses"] == 1
        assert stats["hit_rate"] == pytest.approx(2 / 3)
        assert stats["max_size"] == 3

    def test_persist_and_restore(self, cache, tmp_path):
        """Test that only unexpired entries survive a round trip to disk."""
        path = tmp_path / "cache.json"
        cache.set("keep", {"ids": ["1", "2"]})
        cache.set("stale", "old", ttl=-1)

        assert cache.persist(path) == 1

        restored = PerformanceCache()
        assert restored.restore(path) == 1
        assert restored.get("keep") == {"ids": ["1", "2"]}
        assert not restored.has("stale")

    def test_restore_missing_or_corrupt(self, cache, tmp_path):
        assert cache.restore(tmp_path / "absent.json") == 0
        corrupt = tmp_path / "corrupt.json"
        corrupt.write_text("{", encoding="utf-8")
        assert cache.restore(corrupt) == 0


class TestCacheHelpers:
    """Tests for key builders and invalidation."""

    def test_keys_are_stable(self):
        """Test that filter order does not change the key."""
        assert cache_keys.search("p1", "exercise", {"b": 2, "a": 1}) == cache_keys.search("p1", "exercise", {"a": 1, "b": 2})
        assert cache_keys.articles("p1") == "articles:p1:all:0"
        assert cache_keys.articles("p1", "included", 2) == "articles:p1:included:2"
        assert cache_keys.api("esearch") == "api:esearch:{}"

    def test_with_cache_calls_once(self, cache):
        loader = MagicMock(return_value=[1, 2])

        assert with_cache(cache, "k", loader) == [1, 2]
        assert with_cache(cache, "k", loader) == [1, 2]
        assert loader.call_count == 1

    def test_with_cache_stores_falsy_values(self, cache):
        loader = MagicMock(return_value=None)
        with_cache(cache, "none", loader)
        with_cache(cache, "none", loader)
        assert loader.call_count == 1

    def test_invalidate_prefix(self, cache):
        cache.set("articles:p1:all:0", 1)
        cache.set("articles:p1:included:0", 2)
        cache.set("articles:p2:all:0", 3)

        assert invalidate_prefix(cache, "articles:p1:") == 2
        assert cache.keys() == ["articles:p2:all:0"]

    def test_invalidate_project(self, monkeypatch):
        """Test that a project's entries are dropped from every shared cache."""
        for name in ("project_cache", "article_cache", "search_cache"):
            monkeypatch.setattr(cache_module, name, PerformanceCache())

        cache_module.project_cache.set(cache_keys.stats("p1"), {"total": 3})
        cache_module.article_cache.set(cache_keys.articles("p1"), [])
        cache_module.search_cache.set(cache_keys.search("p1", "exercise"), [])
        cache_module.search_cache.set(cache_keys.search("p2", "exercise"), [])

        invalidate_project("p1")

        assert cache_module.project_cache.size() == 0
        assert cache_module.article_cache.size() == 0
        assert cache_module.search_cache.keys() == [cache_keys.search("p2", "exercise")]
