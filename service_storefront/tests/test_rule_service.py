"""
Unit tests for rule validation, rule administration and section resolution.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from shared.errors import NotFoundError, ValidationError
from service_storefront.app.cache.backends import InMemoryCacheBackend
from service_storefront.app.cache.rule_cache import RuleResultCache
from service_storefront.app.catalog.memory import InMemoryCatalogStore
from service_storefront.app.engine import ExecutionEngine
from service_storefront.app.persistence.memory import InMemoryRuleRepository
from service_storefront.app.rule_service import SmartRuleService
from service_storefront.app.rules.models import RuleFilter, RuleType, SmartRule
from service_storefront.app.rules.validator import validate_smart_rule
from service_storefront.app.sections import SectionProductResolver, SectionRequest

from conftest import ids


class PausingCatalogStore(InMemoryCatalogStore):
    """Holds the first query until released."""

    def __init__(self, records):
        super().__init__(records)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.paused = False

    async def query(self, plan):
        if not self.paused:
            self.paused = True
            self.entered.set()
            await self.release.wait()
        return await super().query(plan)


class TestValidateSmartRule:
    """Test cases for save-time validation."""

    def make_rule(self, rule_type, **kwargs):
        return SmartRule(rule_id=None, organization_id="org-1", rule_type=rule_type, **kwargs)

    def test_valid_rule_passes(self):
        validate_smart_rule(self.make_rule(RuleType.NEW_ARRIVALS, filters=[RuleFilter("createdAt", value="7d")]))

    @pytest.mark.parametrize("limit", [0, 101])
    def test_limit_bounds(self, limit):
        with pytest.raises(ValidationError):
            validate_smart_rule(self.make_rule(RuleType.CUSTOM_QUERY, limit=limit))

    def test_negative_cache_duration(self):
        with pytest.raises(ValidationError):
            validate_smart_rule(self.make_rule(RuleType.CUSTOM_QUERY, cache_duration_minutes=-1))

    def test_filter_not_allowed_for_type(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_smart_rule(self.make_rule(RuleType.DEAD_STOCK, filters=[RuleFilter("price", value=10)]))

        assert exc_info.value.details["field"] == "price"

    def test_unknown_operator(self):
        rule = self.make_rule(RuleType.CUSTOM_QUERY, filters=[RuleFilter.from_dict({"field": "tags", "operator": "like", "value": "a"})])

        with pytest.raises(ValidationError):
            validate_smart_rule(rule)

    def test_category_based_requires_category(self):
        with pytest.raises(ValidationError):
            validate_smart_rule(self.make_rule(RuleType.CATEGORY_BASED))

        validate_smart_rule(self.make_rule(RuleType.CATEGORY_BASED, category_id="cat-1"))

    def test_price_range_requires_bound(self):
        with pytest.raises(ValidationError):
            validate_smart_rule(self.make_rule(RuleType.PRICE_RANGE))

        validate_smart_rule(self.make_rule(RuleType.PRICE_RANGE, filters=[RuleFilter("price_max", value=100)]))

    def test_manual_selection_ignores_filters(self):
        validate_smart_rule(self.make_rule(RuleType.MANUAL_SELECTION, filters=[RuleFilter("anything", value=1)]))

    def test_between_without_upper_bound_is_accepted(self):
        validate_smart_rule(self.make_rule(
            RuleType.CUSTOM_QUERY,
            filters=[RuleFilter.from_dict({"field": "price", "operator": "between", "value": 10})],
        ))


class TestSmartRuleService:
    """Test cases for SmartRuleService."""

    @pytest.fixture
    def service(self, repository, engine):
        return SmartRuleService(repository, engine)

    @pytest.mark.asyncio
    async def test_create_applies_defaults(self, service):
        rule = await service.create_rule("org-1", {"ruleType": "best_sellers", "name": "Top"})

        assert rule.rule_id
        assert rule.limit == 12
        assert rule.cache_duration_minutes == 15
        assert rule.organization_id == "org-1"

    @pytest.mark.asyncio
    async def test_create_ignores_server_fields(self, service):
        rule = await service.create_rule("org-1", {
            "ruleType": "custom_query", "id": "chosen", "organizationId": "org-2", "executionCount": 99,
        })

        assert rule.rule_id != "chosen"
        assert rule.organization_id == "org-1"
        assert rule.execution_count == 0

    @pytest.mark.asyncio
    async def test_create_validates(self, service):
        with pytest.raises(ValidationError):
            await service.create_rule("org-1", {"ruleType": "category_based"})
        with pytest.raises(ValidationError):
            await service.create_rule("org-1", {"ruleType": "unknown"})

    @pytest.mark.asyncio
    async def test_get_is_tenant_scoped(self, service):
        rule = await service.create_rule("org-1", {"ruleType": "custom_query"})

        with pytest.raises(NotFoundError):
            await service.get_rule(rule.rule_id, "org-2")

    @pytest.mark.asyncio
    async def test_update_invalidates_cache(self, service, engine, cache_backend):
        rule = await service.create_rule("org-1", {"ruleType": "custom_query", "limit": 2})
        before = await engine.execute(rule.rule_id, "org-1")
        await engine.execute(rule.rule_id, "org-1", limit_override=1)

        updated = await service.update_rule(rule.rule_id, "org-1", {"limit": 4})
        after = await engine.execute(rule.rule_id, "org-1")
        await engine.close()

        assert updated.limit == 4
        assert updated.created_at == rule.created_at
        assert len(before) == 2
        assert len(after) == 4

    @pytest.mark.asyncio
    async def test_execution_racing_an_update_cannot_serve_old_results(self, catalog_records):
        repository = InMemoryRuleRepository()
        catalog = PausingCatalogStore(catalog_records)
        engine = ExecutionEngine(repository, catalog, RuleResultCache(InMemoryCacheBackend()))
        service = SmartRuleService(repository, engine)
        rule = await service.create_rule("org-1", {"ruleType": "custom_query", "limit": 2})

        in_flight = asyncio.create_task(engine.execute(rule.rule_id, "org-1"))
        await catalog.entered.wait()
        await service.update_rule(rule.rule_id, "org-1", {"limit": 5})
        catalog.release.set()
        before = await in_flight
        after = await engine.execute(rule.rule_id, "org-1")
        await engine.close()

        assert len(before) == 2
        assert len(after) == 5

    @pytest.mark.asyncio
    async def test_update_keeps_statistics(self, service, engine):
        rule = await service.create_rule("org-1", {"ruleType": "custom_query"})
        await engine.execute(rule.rule_id, "org-1")
        await engine.close()

        updated = await service.update_rule(rule.rule_id, "org-1", {"name": "Renamed"})

        assert updated.name == "Renamed"
        assert updated.execution_count == 1

    @pytest.mark.asyncio
    async def test_deactivated_rule_stops_executing(self, service, engine):
        rule = await service.create_rule("org-1", {"ruleType": "custom_query"})
        await engine.execute(rule.rule_id, "org-1")

        await service.update_rule(rule.rule_id, "org-1", {"isActive": False})

        with pytest.raises(NotFoundError):
            await engine.execute(rule.rule_id, "org-1")
        await engine.close()

    @pytest.mark.asyncio
    async def test_delete_invalidates_and_removes(self, service, engine, cache_backend):
        rule = await service.create_rule("org-1", {"ruleType": "custom_query"})
        await engine.execute(rule.rule_id, "org-1")
        await engine.close()

        await service.delete_rule(rule.rule_id, "org-1")

        assert cache_backend.keys() == []
        with pytest.raises(NotFoundError):
            await service.delete_rule(rule.rule_id, "org-1")

    @pytest.mark.asyncio
    async def test_analytics(self, service, engine):
        rule = await service.create_rule("org-1", {"ruleType": "custom_query", "name": "Latest"})
        await engine.execute(rule.rule_id, "org-1")
        await engine.close()

        analytics = await service.get_analytics(rule.rule_id, "org-1")

        assert analytics["executionCount"] == 1
        assert analytics["name"] == "Latest"
        assert analytics["lastExecutedAt"] is not None


class TestSectionProductResolver:
    """Test cases for SectionProductResolver."""

    @pytest.fixture
    def resolver(self, engine):
        return SectionProductResolver(engine)

    @pytest.mark.asyncio
    async def test_manual_section(self, resolver):
        section = SectionRequest.model_validate({"dataSource": "manual", "manualData": {"productIds": ["p3", "x1", "p1"]}})

        assert ids(await resolver.resolve_section(section, "org-1")) == ["p3", "p1"]

    @pytest.mark.asyncio
    async def test_smart_section_with_saved_rule(self, resolver, engine, repository):
        rule = await repository.create(SmartRule(
            rule_id=None, organization_id="org-1", rule_type=RuleType.BEST_SELLERS, limit=1,
        ))
        section = SectionRequest.model_validate({"dataSource": "smart", "smartRuleId": rule.rule_id})

        assert ids(await resolver.resolve_section(section, "org-1")) == ["p1"]
        await engine.close()

    @pytest.mark.asyncio
    async def test_missing_rule_renders_empty(self, resolver):
        section = SectionRequest.model_validate({"dataSource": "smart", "smartRuleId": "gone"})

        assert await resolver.resolve_section(section, "org-1") == []

    @pytest.mark.asyncio
    async def test_inline_config(self, resolver):
        section = SectionRequest.model_validate({"dataSource": "smart", "config": {"ruleType": "clearance_sale"}})

        assert ids(await resolver.resolve_section(section, "org-1")) == ["p4", "p1"]

    @pytest.mark.asyncio
    async def test_latest_fallback(self, resolver, engine):
        engine.execute_ad_hoc = AsyncMock(return_value=[])
        section = SectionRequest.model_validate({"dataSource": "smart", "config": {"limit": 3}})

        await resolver.resolve_section(section, "org-1")

        engine.execute_ad_hoc.assert_awaited_once_with({"ruleType": "custom_query", "limit": 3}, "org-1")

    @pytest.mark.asyncio
    async def test_latest_fallback_default_size(self, resolver):
        section = SectionRequest.model_validate({"dataSource": "smart"})

        assert len(await resolver.resolve_section(section, "org-1")) == 5

    @pytest.mark.asyncio
    async def test_unknown_source_is_empty(self, resolver):
        section = SectionRequest.model_validate({"dataSource": "static"})

        assert await resolver.resolve_section(section, "org-1") == []

    @pytest.mark.asyncio
    async def test_malformed_inline_values_are_ignored(self, resolver):
        section = SectionRequest.model_validate({"dataSource": "smart", "config": {
            "ruleType": "clearance_sale", "cacheDurationMinutes": "abc", "pinnedProductIds": 5,
        }})

        assert ids(await resolver.resolve_section(section, "org-1")) == ["p4", "p1"]

    @pytest.mark.asyncio
    async def test_manual_ids_must_be_a_list(self, resolver):
        section = SectionRequest.model_validate({"dataSource": "smart", "config": {
            "ruleType": "manual_selection", "manualProductIds": "p1",
        }})

        assert await resolver.resolve_section(section, "org-1") == []

    @pytest.mark.asyncio
    async def test_unknown_inline_rule_type_is_empty(self, resolver):
        section = SectionRequest.model_validate({"dataSource": "smart", "config": {"ruleType": "bogus"}})

        assert await resolver.resolve_section(section, "org-1") == []


class TestSmartRuleFromConfig:
    """Inline configs are normalised rather than trusted."""

    def test_id_lists_keep_only_strings(self):
        rule = SmartRule.from_config({
            "ruleType": "manual_selection",
            "manualProductIds": ["p1", 2, None, "p2"],
            "pinnedProductIds": "p1",
            "excludedProductIds": {"id": "p3"},
        }, "org-1")

        assert rule.manual_product_ids == ["p1", "p2"]
        assert rule.pinned_product_ids == []
        assert rule.excluded_product_ids == []

    def test_unusable_cache_duration_falls_back(self):
        rule = SmartRule.from_config({"ruleType": "custom_query", "cacheDurationMinutes": "abc"}, "org-1")

        assert rule.cache_duration_minutes == 15

    def test_non_list_filters_and_sort_are_ignored(self):
        rule = SmartRule.from_config({"ruleType": "custom_query", "filters": "price", "sortBy": ["price"]}, "org-1")

        assert rule.filters == []
        assert rule.sort_by is None
