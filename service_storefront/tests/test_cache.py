"""
Unit tests for cache backends and the rule result cache.
"""

import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from shared.errors import CacheUnavailableError
from shared.metrics import MetricsCollector
from service_storefront.app.cache.backends import InMemoryCacheBackend, RedisCacheBackend
from service_storefront.app.cache.rule_cache import RuleResultCache, organization_prefix, rule_key
from service_storefront.app.catalog.models import PriceInfo, ProductDTO, StockInfo


def make_dto(product_id="p1"):
    return ProductDTO(
        id=product_id,
        name="Shoe",
        price=PriceInfo(original=100.0, discounted=80.0, currency="INR", has_discount=True),
        category="Shoes",
        stock=StockInfo(available=True),
    )


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestInMemoryCacheBackend:
    """Test cases for InMemoryCacheBackend."""

    @pytest.mark.asyncio
    async def test_entries_expire(self):
        clock = FakeClock()
        backend = InMemoryCacheBackend(clock=clock)

        await backend.set("k", "v", 60)
        assert await backend.get("k") == "v"

        clock.now += 61
        assert await backend.get("k") is None

    @pytest.mark.asyncio
    async def test_delete_prefix(self):
        backend = InMemoryCacheBackend()
        await backend.set("a:1", "x", 60)
        await backend.set("a:2", "x", 60)
        await backend.set("b:1", "x", 60)

        assert await backend.delete_prefix("a:") == 2
        assert backend.keys() == ["b:1"]

    @pytest.mark.asyncio
    async def test_set_sweeps_expired_entries(self):
        clock = FakeClock()
        backend = InMemoryCacheBackend(clock=clock)
        await backend.set("old:limit:3", "x", 10)

        clock.now += 11
        await backend.set("new", "y", 10)

        assert backend.keys() == ["new"]


class TestRedisCacheBackend:
    """Test cases for RedisCacheBackend."""

    @pytest.fixture
    def backend(self):
        backend = RedisCacheBackend("redis://localhost:6379/0")
        backend.redis = MagicMock()
        return backend

    @pytest.mark.asyncio
    async def test_set_uses_ttl(self, backend):
        backend.redis.setex = AsyncMock()

        await backend.set("k", "v", 900)

        backend.redis.setex.assert_awaited_once_with("k", 900, "v")

    @pytest.mark.asyncio
    async def test_delete_prefix_scans(self, backend):
        async def scan_iter(match, count):
            assert match == "smart_rule_v1:org-1:*"
            for key in ("smart_rule_v1:org-1:r1", "smart_rule_v1:org-1:r2"):
                yield key

        backend.redis.scan_iter = scan_iter
        backend.redis.delete = AsyncMock(return_value=2)

        assert await backend.delete_prefix("smart_rule_v1:org-1:") == 2
        backend.redis.delete.assert_awaited_once_with("smart_rule_v1:org-1:r1", "smart_rule_v1:org-1:r2")

    @pytest.mark.asyncio
    async def test_errors_become_cache_unavailable(self, backend):
        from redis.exceptions import ConnectionError as RedisConnectionError
        backend.redis.get = AsyncMock(side_effect=RedisConnectionError("down"))

        with pytest.raises(CacheUnavailableError):
            await backend.get("k")

    @pytest.mark.asyncio
    async def test_unreachable_server_at_startup(self, monkeypatch):
        from redis.exceptions import ConnectionError as RedisConnectionError
        client = MagicMock()
        client.ping = AsyncMock(side_effect=RedisConnectionError("refused"))
        client.get = AsyncMock(side_effect=RedisConnectionError("refused"))
        monkeypatch.setattr("redis.asyncio.from_url", MagicMock(return_value=client))
        backend = RedisCacheBackend("redis://127.0.0.1:1/0")

        await backend.start()

        assert backend.redis is client
        assert await backend.health_check() is False
        with pytest.raises(CacheUnavailableError):
            await backend.get("k")

    @pytest.mark.asyncio
    async def test_not_started(self):
        with pytest.raises(CacheUnavailableError):
            await RedisCacheBackend("redis://localhost:6379/0").get("k")


class TestRuleResultCache:
    """Test cases for RuleResultCache."""

    def test_key_layout(self):
        assert rule_key("org-1", "r1") == "smart_rule_v1:org-1:r1"
        assert rule_key("org-1", "r1", 5) == "smart_rule_v1:org-1:r1:limit:5"
        assert organization_prefix("org-1") == "smart_rule_v1:org-1:"

    @pytest.mark.asyncio
    async def test_round_trip(self):
        backend = InMemoryCacheBackend()
        cache = RuleResultCache(backend)

        assert await cache.set_results("org-1", "r1", [make_dto()], 15) is True
        cached = await cache.get_results("org-1", "r1")

        assert cached == [make_dto()]
        stored = json.loads(await backend.get("smart_rule_v1:org-1:r1"))
        assert "storedAt" in stored
        assert stored["results"][0]["price"]["hasDiscount"] is True

    @pytest.mark.asyncio
    async def test_entry_of_other_rule_version_is_a_miss(self):
        cache = RuleResultCache(InMemoryCacheBackend())
        await cache.set_results("org-1", "r1", [make_dto()], 15, version="2024-01-01T00:00:00+00:00")

        assert await cache.get_results("org-1", "r1", version="2024-02-01T00:00:00+00:00") is None
        assert await cache.get_results("org-1", "r1", version="2024-01-01T00:00:00+00:00") == [make_dto()]

    @pytest.mark.asyncio
    async def test_read_failure_is_a_miss(self):
        backend = MagicMock()
        backend.get = AsyncMock(side_effect=CacheUnavailableError("down"))

        assert await RuleResultCache(backend).get_results("org-1", "r1") is None

    @pytest.mark.asyncio
    async def test_write_failure_is_ignored(self):
        backend = MagicMock()
        backend.set = AsyncMock(side_effect=CacheUnavailableError("down"))

        assert await RuleResultCache(backend).set_results("org-1", "r1", [make_dto()], 15) is False

    @pytest.mark.asyncio
    async def test_corrupt_entry_is_a_miss(self):
        backend = InMemoryCacheBackend()
        await backend.set("smart_rule_v1:org-1:r1", "{not json", 60)

        assert await RuleResultCache(backend).get_results("org-1", "r1") is None

    @pytest.mark.asyncio
    async def test_invalidate_rule_removes_variants_only(self):
        backend = InMemoryCacheBackend()
        cache = RuleResultCache(backend)
        for key in ("smart_rule_v1:org-1:r1", "smart_rule_v1:org-1:r1:limit:3", "smart_rule_v1:org-1:r10"):
            await backend.set(key, "[]", 60)

        assert await cache.invalidate_rule("org-1", "r1") is True
        assert backend.keys() == ["smart_rule_v1:org-1:r10"]

    @pytest.mark.asyncio
    async def test_invalidation_failure_is_logged(self):
        backend = MagicMock()
        backend.delete_prefix = AsyncMock(side_effect=CacheUnavailableError("down"))

        assert await RuleResultCache(backend).invalidate_organization("org-1") is False

    @pytest.mark.asyncio
    async def test_cache_events_counted(self):
        metrics = MetricsCollector("storefront")
        cache = RuleResultCache(InMemoryCacheBackend(), metrics=metrics)

        await cache.get_results("org-1", "r1")
        await cache.set_results("org-1", "r1", [make_dto()], 15)
        await cache.get_results("org-1", "r1")

        assert metrics.registry.get_sample_value("smart_rule_cache_events_total", {"result": "miss"}) == 1.0
        assert metrics.registry.get_sample_value("smart_rule_cache_events_total", {"result": "hit"}) == 1.0
