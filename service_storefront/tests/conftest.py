"""
Shared fixtures for Storefront service tests.
"""

from datetime import datetime, timedelta, timezone

import pytest

from service_storefront.app.cache.backends import InMemoryCacheBackend
from service_storefront.app.cache.rule_cache import RuleResultCache
from service_storefront.app.catalog.memory import InMemoryCatalogStore
from service_storefront.app.engine import ExecutionEngine
from service_storefront.app.persistence.memory import InMemoryRuleRepository


NOW = datetime.now(timezone.utc)


def days_ago(days: float) -> datetime:
    return NOW - timedelta(days=days)


def make_product(product_id: str, organization_id: str = "org-1", **fields):
    """Catalog record with sensible defaults."""
    created_at = fields.pop("createdAt", days_ago(30))
    record = {
        "id": product_id,
        "organizationId": organization_id,
        "isActive": True,
        "isDeleted": False,
        "name": f"Product {product_id}",
        "slug": f"product-{product_id}",
        "description": None,
        "sku": f"SKU-{product_id}",
        "createdAt": created_at,
        "updatedAt": created_at,
        "sellingPrice": 100,
        "discountedPrice": None,
        "categoryId": "cat-shoes",
        "categoryName": "Shoes",
        "brandId": "brand-a",
        "tags": [],
        "images": [],
        "inventory": [{"quantity": 10}],
        "salesCount": 0,
        "lastSold": None,
        "costPrice": 40,
        "supplierId": "supplier-1",
    }
    record.update(fields)
    return record


@pytest.fixture
def catalog_records():
    """Mixed catalog for org-1 plus noise from another organization."""
    return [
        make_product(
            "p1", createdAt=days_ago(2), sellingPrice=100, discountedPrice=80,
            salesCount=50, lastSold=days_ago(1), tags=["summer", "sale"],
            inventory=[{"quantity": 3}], images=[{"url": "https://cdn.example.com/p1.jpg"}],
        ),
        make_product(
            "p2", createdAt=days_ago(10), sellingPrice=200, salesCount=10,
            lastSold=days_ago(20), tags=["winter"], inventory=[{"quantity": 20}],
        ),
        make_product(
            "p3", createdAt=days_ago(60), sellingPrice=50, discountedPrice=48,
            categoryId="cat-bags", categoryName="Bags", inventory=[{"quantity": 40}],
        ),
        make_product(
            "p4", createdAt=days_ago(5), sellingPrice=300, discountedPrice=150,
            salesCount=5, lastSold=days_ago(3), categoryId="cat-bags", categoryName="Bags",
            inventory=[{"quantity": 0}, {"quantity": 2}],
        ),
        make_product(
            "p5", createdAt=days_ago(200), sellingPrice=80, lastSold=days_ago(120),
            inventory=[{"quantity": 12}],
        ),
        make_product("p6", createdAt=days_ago(1), isActive=False),
        make_product("p7", createdAt=days_ago(1), isDeleted=True),
        make_product(
            "x1", organization_id="org-2", createdAt=days_ago(1), salesCount=100,
            lastSold=days_ago(1), discountedPrice=10, inventory=[{"quantity": 1}],
        ),
    ]


@pytest.fixture
def catalog(catalog_records):
    return InMemoryCatalogStore(catalog_records)


@pytest.fixture
def repository():
    return InMemoryRuleRepository()


@pytest.fixture
def cache_backend():
    return InMemoryCacheBackend()


@pytest.fixture
def engine(repository, catalog, cache_backend):
    return ExecutionEngine(
        repository=repository,
        catalog=catalog,
        cache=RuleResultCache(cache_backend),
    )


def ids(results):
    """Ids of DTOs or raw records, in order."""
    return [r.id if hasattr(r, "id") else r["id"] for r in results]
