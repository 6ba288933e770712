"""
Unit tests for catalog stores and the result transformer.
"""

from decimal import Decimal

import pytest

from service_storefront.app.catalog.memory import InMemoryCatalogStore, resolve_path
from service_storefront.app.catalog.postgres import SQLRenderer, escape_like
from service_storefront.app.catalog.transformer import ResultTransformer
from service_storefront.app.rules.compiler import RuleCompiler
from service_storefront.app.rules.models import RuleType, SmartRule, SortOrder
from service_storefront.app.rules.plan import (
    MATCH_NOTHING, CompiledQueryPlan, Condition, MatchStage, Op,
)

from conftest import ids, make_product


def plan_for(predicate, sort=(("id", SortOrder.ASC),), limit=10, preserve_order=None):
    return CompiledQueryPlan(stages=(MatchStage(predicate),), sort=sort, limit=limit, preserve_order=preserve_order)


class TestInMemoryCatalogStore:
    """Test cases for InMemoryCatalogStore."""

    def test_resolve_path_descends_into_lists(self):
        record = {"inventory": [{"quantity": 1}, {"quantity": 7}], "tags": ["a"], "name": "x"}

        assert resolve_path(record, "inventory.quantity") == ([1, 7], True)
        assert resolve_path(record, "tags") == (["a"], True)
        assert resolve_path(record, "name") == ("x", False)
        assert resolve_path(record, "missing") == (None, False)

    @pytest.mark.asyncio
    async def test_list_fields_match_any_element(self, catalog):
        results = await catalog.query(plan_for(Condition("inventory.quantity", Op.LTE, 2)))

        assert ids(results) == ["p4", "x1"]

    @pytest.mark.asyncio
    async def test_not_in_on_list_field_means_no_element(self, catalog):
        results = await catalog.query(plan_for(Condition("tags", Op.NOT_IN, ("summer", "winter"))))

        assert "p1" not in ids(results)
        assert "p2" not in ids(results)
        assert "p3" in ids(results)

    @pytest.mark.asyncio
    async def test_contains_is_case_insensitive_and_literal(self):
        store = InMemoryCatalogStore([make_product("a", name="50% OFF Sneakers"), make_product("b", name="500 OFF")])

        results = await store.query(plan_for(Condition("name", Op.CONTAINS, "50% off")))

        assert ids(results) == ["a"]

    @pytest.mark.asyncio
    async def test_match_nothing(self, catalog):
        assert await catalog.query(plan_for(MATCH_NOTHING)) == []

    @pytest.mark.asyncio
    async def test_missing_values_sort_last(self):
        store = InMemoryCatalogStore([
            make_product("a", salesCount=None),
            make_product("b", salesCount=1),
            make_product("c", salesCount=5),
        ])
        for direction, expected in ((SortOrder.ASC, ["b", "c", "a"]), (SortOrder.DESC, ["c", "b", "a"])):
            plan = plan_for(Condition("organizationId", Op.EQ, "org-1"), sort=(("salesCount", direction),))
            assert ids(await store.query(plan)) == expected

    @pytest.mark.asyncio
    async def test_preserve_order_and_count(self, catalog):
        plan = plan_for(Condition("id", Op.IN, ("p3", "p1", "p2")), limit=2, preserve_order=("p3", "p1", "p2"))

        assert ids(await catalog.query(plan)) == ["p3", "p1"]
        assert await catalog.count(plan) == 3

    @pytest.mark.asyncio
    async def test_query_does_not_mutate_records(self, catalog, catalog_records):
        rule = SmartRule(rule_id="r", organization_id="org-1", rule_type=RuleType.CLEARANCE_SALE)

        await catalog.query(RuleCompiler().compile(rule, "org-1"))

        assert all("discountPercent" not in record for record in catalog_records)


class TestSQLRenderer:
    """Test cases for PostgreSQL plan rendering."""

    def test_values_are_bound_not_interpolated(self):
        plan = plan_for(Condition("name", Op.EQ, "x'; DROP TABLE products; --"))

        sql, params = SQLRenderer().render_query(plan)

        assert "DROP TABLE" not in sql
        assert params == ["x'; DROP TABLE products; --", 10]
        assert 'ORDER BY q."id" ASC NULLS LAST LIMIT $2' in sql

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValueError):
            SQLRenderer().render_query(plan_for(Condition('name"; --', Op.EQ, 1)))

    def test_preserve_order_uses_array_position(self):
        plan = plan_for(Condition("id", Op.IN, ("b", "a")), preserve_order=("b", "a"))

        sql, params = SQLRenderer().render_query(plan)

        assert "array_position($2::text[], q.id)" in sql
        assert params == [["b", "a"], ["b", "a"], 10]

    def test_inventory_and_tags_render_as_element_checks(self):
        sql, _ = SQLRenderer().render_count(plan_for(Condition("inventory.quantity", Op.LTE, 10)))
        assert "jsonb_array_elements" in sql
        assert sql.startswith("SELECT COUNT(*)")

        sql, params = SQLRenderer().render_count(plan_for(Condition("tags", Op.IN, ("a",))))
        assert "&&" in sql
        assert params == [["a"]]

    def test_contains_escapes_wildcards(self):
        assert escape_like("50%_off") == "50\\%\\_off"

        _, params = SQLRenderer().render_count(plan_for(Condition("name", Op.CONTAINS, "50%")))
        assert params == ["%50\\%%"]

    def test_compiled_clearance_plan_renders(self):
        rule = SmartRule(rule_id="r", organization_id="org-1", rule_type=RuleType.CLEARANCE_SALE)

        sql, params = SQLRenderer().render_query(RuleCompiler().compile(rule, "org-1"))

        assert 'AS "discountPercent"' in sql
        assert "NULLIF" in sql
        assert params[0] == "org-1"


class TestResultTransformer:
    """Test cases for ResultTransformer."""

    @pytest.fixture
    def transformer(self):
        return ResultTransformer()

    def test_public_projection(self, transformer):
        record = make_product(
            "p1", sellingPrice=Decimal("100.00"), discountedPrice=Decimal("80.00"),
            images=[{"url": "https://cdn.example.com/a.jpg"}, "https://cdn.example.com/b.jpg"],
            tags=["summer"], inventory=[{"quantity": 0}, {"quantity": 4}],
        )

        dto = transformer.transform(record)

        assert dto.id == "p1"
        assert dto.price.original == 100.0
        assert dto.price.discounted == 80.0
        assert dto.price.has_discount is True
        assert dto.price.currency == "INR"
        assert dto.images == ["https://cdn.example.com/a.jpg", "https://cdn.example.com/b.jpg"]
        assert dto.category == "Shoes"
        assert dto.stock.available is True
        assert "costPrice" not in dto.model_dump(by_alias=True)

    def test_no_discount_when_not_cheaper(self, transformer):
        dto = transformer.transform(make_product("p1", sellingPrice=100, discountedPrice=100))

        assert dto.price.has_discount is False

    def test_fallbacks(self):
        record = make_product("p1", categoryName=None, inventory=[{"quantity": 0}], currency="USD")
        record.pop("categoryName")

        dto = ResultTransformer(default_currency="EUR").transform(record)

        assert dto.category == "Uncategorized"
        assert dto.stock.available is False
        assert dto.price.currency == "USD"
        assert dto.price.discounted is None
