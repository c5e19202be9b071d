"""Tests for the file-backed TTL caches."""

import asyncio
import json

import pytest

from reservation_scraper.cache import TTLCache, CacheStore, make_key
from reservation_scraper.config import HOUR, DAY


class TestTTLCache:

    def test_write_then_read_before_ttl(self, tmp_path, clock):
        cache = TTLCache(tmp_path / "c.json", ttl=HOUR, clock=clock)
        cache.set("k", {"restaurants": [1, 2]})
        clock.advance(HOUR - 1)
        assert cache.get("k") == {"restaurants": [1, 2]}

    def test_expires_after_ttl(self, tmp_path, clock):
        cache = TTLCache(tmp_path / "c.json", ttl=HOUR, clock=clock)
        cache.set("k", 1)
        clock.advance(HOUR)
        assert cache.get("k") is None
        # Stale entries are still visible as raw entries
        assert cache.get_entry("k")["data"] == 1

    def test_max_age_override(self, tmp_path, clock):
        cache = TTLCache(tmp_path / "c.json", ttl=DAY, clock=clock)
        cache.set("k", 1)
        clock.advance(120)
        assert cache.get("k", max_age=60) is None
        assert cache.get("k") == 1

    def test_persists_whole_file_with_ms_timestamps(self, tmp_path, clock):
        path = tmp_path / "sub" / "c.json"
        cache = TTLCache(path, ttl=HOUR, clock=clock)
        cache.set("a", "x")

        raw = json.loads(path.read_text())
        assert raw == {"a": {"data": "x", "timestamp": clock.now * 1000}}

        reopened = TTLCache(path, ttl=HOUR, clock=clock)
        assert reopened.get("a") == "x"

    def test_async_set_persists_latest_value(self, tmp_path, clock):
        path = tmp_path / "c.json"
        cache = TTLCache(path, ttl=HOUR, clock=clock)

        async def write_all():
            await asyncio.gather(*[cache.aset(f"k{i}", i) for i in range(5)])
            await cache.aset("k0", "last")

        asyncio.run(write_all())
        assert cache.get("k0") == "last"
        raw = json.loads(path.read_text())
        assert raw["k0"]["data"] == "last"
        assert sorted(raw) == ["k0", "k1", "k2", "k3", "k4"]
        assert not (tmp_path / "c.json.tmp").exists()

    def test_corrupt_file_starts_empty(self, tmp_path, clock):
        path = tmp_path / "c.json"
        path.write_text("{not json")
        cache = TTLCache(path, ttl=HOUR, clock=clock)
        assert cache.get("a") is None
        cache.set("a", 1)
        assert json.loads(path.read_text())["a"]["data"] == 1

    def test_malformed_entries_are_dropped(self, tmp_path, clock):
        path = tmp_path / "c.json"
        path.write_text(json.dumps({"ok": {"data": 1, "timestamp": clock.now * 1000}, "bad": 5}))
        cache = TTLCache(path, ttl=HOUR, clock=clock)
        assert len(cache) == 1

    def test_items_skip_stale(self, tmp_path, clock):
        cache = TTLCache(tmp_path / "c.json", ttl=HOUR, clock=clock)
        cache.set("old", 1)
        clock.advance(2 * HOUR)
        cache.set("new", 2)
        assert dict(cache.items()) == {"new": 2}
        assert dict(cache.items(include_stale=True)) == {"old": 1, "new": 2}

    def test_delete_and_clear(self, tmp_path, clock):
        cache = TTLCache(tmp_path / "c.json", ttl=HOUR, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.delete("a")
        cache.delete("missing")
        assert cache.get("a") is None
        cache.clear()
        assert len(cache) == 0


class TestCacheStore:

    def test_domains_map_to_configured_files(self, caches, config):
        caches.platform_links.set("den:tokyo", {"omakase": None})
        assert (config.cache_path("platform_links")).name == "platform-links-cache.json"
        assert config.cache_path("platform_links").exists()
        assert caches.platform_links.ttl == 30 * DAY
        assert caches.availability.ttl == 4 * HOUR

    def test_same_instance_per_domain(self, caches):
        assert caches.domain("listing") is caches.listing

    def test_unknown_domain(self, caches):
        with pytest.raises(KeyError):
            caches.domain("nope")


def test_make_key():
    assert make_key("tabelog", "tokyo", None, 2) == "tabelog:tokyo::2"
