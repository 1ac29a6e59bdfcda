#!/usr/bin/env python3
"""
Unit tests for the market-data Cache Store
Freshness, stats, key generation, TTL policy, last-known values
"""

import pytest
from pathlib import Path
import sys

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from marketcache import (
    CacheEntry,
    CacheStore,
    DEFAULT_TTL_TABLE,
    LastKnownValues,
    TTLPolicy,
    make_cache_key,
)
from marketcache.store import is_fresh
from providers import QueryShape


class TestFreshness:
    """Test: freshness is a pure function of age and TTL."""

    def test_fresh_inside_ttl(self):
        entry = CacheEntry(payload=1, fetched_at=1000.0, source="coingecko")
        assert is_fresh(entry, 60, 1059.9)

    def test_stale_at_ttl(self):
        entry = CacheEntry(payload=1, fetched_at=1000.0, source="coingecko")
        assert not is_fresh(entry, 60, 1060.0)

    def test_monotonic_in_elapsed_time(self):
        entry = CacheEntry(payload=1, fetched_at=1000.0, source="coingecko")
        seen_stale = False
        for now in range(1000, 1200):
            fresh = is_fresh(entry, 60, now)
            if seen_stale:
                assert not fresh
            seen_stale = seen_stale or not fresh
        assert seen_stale


class TestCacheStore:
    """Test in-memory store CRUD and metrics."""

    @pytest.fixture
    def cache(self, clock):
        return CacheStore(clock=clock)

    def test_write_and_read(self, cache, clock):
        """Test: write entry, read it back whole."""
        entry = CacheEntry(payload={"price": 1.5}, fetched_at=clock.now, source="coingecko")
        cache.put("btc:detail", entry)
        assert cache.get("btc:detail") is entry

    def test_lookup_miss(self, cache):
        entry, fresh = cache.lookup("btc:detail", 60)
        assert entry is None
        assert fresh is False
        assert cache.get_stats()["misses"] == 1

    def test_lookup_fresh_then_stale(self, cache, clock):
        """Test: stale entries are still returned, flagged not fresh."""
        cache.put("btc:detail", CacheEntry(payload=1, fetched_at=clock.now, source="coingecko"))

        entry, fresh = cache.lookup("btc:detail", 60)
        assert entry is not None and fresh

        clock.advance(61)
        entry, fresh = cache.lookup("btc:detail", 60)
        assert entry is not None and not fresh

        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["stale_reads"] == 1
        assert stats["writes"] == 1
        assert stats["entries"] == 1

    def test_put_replaces_whole_entry(self, cache, clock):
        cache.put("k:detail", CacheEntry(payload={"a": 1, "b": 2}, fetched_at=clock.now, source="coingecko"))
        cache.put("k:detail", CacheEntry(payload={"a": 3}, fetched_at=clock.now, source="coinmarketcap",
                                         provenance="secondary"))
        entry = cache.get("k:detail")
        assert entry.payload == {"a": 3}
        assert entry.source == "coinmarketcap"
        assert len(cache) == 1

    def test_invalidate_and_clear(self, cache, clock):
        cache.put("a:detail", CacheEntry(payload=1, fetched_at=clock.now, source="coingecko"))
        cache.put("b:detail", CacheEntry(payload=2, fetched_at=clock.now, source="coingecko"))

        assert cache.invalidate("a:detail") is True
        assert cache.invalidate("a:detail") is False
        assert cache.clear() == 1
        assert cache.get_stats()["evictions"] == 2

    def test_hit_rate(self, cache, clock):
        cache.put("a:detail", CacheEntry(payload=1, fetched_at=clock.now, source="coingecko"))
        cache.lookup("a:detail", 60)
        cache.lookup("missing:detail", 60)
        assert cache.get_stats()["hit_rate_percent"] == 50.0


class TestKeyGeneration:
    """Test deterministic "<entity>:<shape>" keys."""

    def test_single_entity_lowercased(self):
        assert make_cache_key("BTC", "detail") == "btc:detail"
        assert make_cache_key(" Bitcoin ", "history:7d") == "bitcoin:history:7d"

    def test_accepts_enum_shape(self):
        assert make_cache_key("eth", QueryShape.OHLC_1D) == "eth:ohlc:1d"

    def test_batch_sorted_deduped_uppercased(self):
        a = make_cache_key("", "batch-quote", ["eth", "BTC", "btc"])
        b = make_cache_key("", "batch-quote", ["BTC", "ETH"])
        assert a == b == "BTC,ETH:batch-quote"

    def test_batch_from_entity(self):
        assert make_cache_key("sol,btc", "batch-quote") == "BTC,SOL:batch-quote"

    def test_same_entity_different_shapes(self):
        assert make_cache_key("btc", "history:1d") != make_cache_key("btc", "history:7d")


class TestTTLPolicy:
    """Test TTL table per query shape."""

    def test_every_shape_has_ttl(self):
        policy = TTLPolicy()
        for shape in QueryShape:
            assert policy.ttl_for(shape) > 0

    def test_defaults(self):
        policy = TTLPolicy()
        assert policy.ttl_for("detail") == 60
        assert policy.ttl_for("global") == 120
        assert policy.ttl_for("fear-greed") == 600
        assert policy.ttl_for("history:365d") == 43200

    def test_longer_history_windows_live_longer(self):
        days = [DEFAULT_TTL_TABLE[f"history:{d}d"] for d in (1, 7, 30, 90, 365)]
        assert days == sorted(days)

    def test_override(self):
        policy = TTLPolicy({"markets": 30})
        assert policy.ttl_for("markets") == 30
        assert policy.ttl_for("detail") == 60

    def test_unknown_shape_is_error(self):
        with pytest.raises(KeyError):
            TTLPolicy().ttl_for("candles:2d")

    def test_unknown_override_rejected(self):
        with pytest.raises(ValueError):
            TTLPolicy({"candles:2d": 5})

    def test_non_positive_override_rejected(self):
        with pytest.raises(ValueError):
            TTLPolicy({"detail": 0})


class TestLastKnownValues:

    def test_remember_and_recall(self):
        values = LastKnownValues()
        entry = CacheEntry(payload={"value": 40}, fetched_at=0.0, source="alternative_me")
        values.remember("index:fear-greed", entry)
        assert values.recall("index:fear-greed") is entry
        assert values.recall("other") is None
        assert len(values) == 1
