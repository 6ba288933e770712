"""
Storefront service: smart rule administration and execution.
"""

from typing import Optional

from fastapi import Depends, Header, Query, Response

from shared.base_service import BaseService
from shared.errors import ValidationError

from .cache.backends import CacheBackend, InMemoryCacheBackend, RedisCacheBackend
from .cache.rule_cache import RuleResultCache
from .catalog.base import CatalogStore
from .catalog.memory import InMemoryCatalogStore
from .catalog.models import PreviewResult, ProductListResponse
from .catalog.postgres import PostgresCatalogStore
from .catalog.transformer import ResultTransformer
from .engine import DEFAULT_PREVIEW_LIMIT, ExecutionEngine
from .persistence.base import RuleRepository
from .persistence.memory import InMemoryRuleRepository
from .persistence.postgres import PostgresRuleRepository
from .rule_service import SmartRuleService
from .rules.models import (
    MAX_LIMIT, SmartRuleBody, SmartRuleListResponse, SmartRuleResponse,
    SmartRuleUpdateRequest, is_valid_identifier,
)
from .sections import SectionProductResolver, SectionRequest


async def require_organization(x_organization_id: Optional[str] = Header(None)) -> str:
    """Tenant scope of the request."""
    if not is_valid_identifier(x_organization_id):
        raise ValidationError("X-Organization-Id header is missing or malformed")
    return x_organization_id


class StorefrontService(BaseService):
    """Storefront service implementation."""

    def __init__(
        self,
        repository: Optional[RuleRepository] = None,
        catalog: Optional[CatalogStore] = None,
        cache_backend: Optional[CacheBackend] = None
    ):
        super().__init__("storefront", 8020)

        # Initialize components
        self.repository = repository or self._build_repository()
        self.catalog = catalog or self._build_catalog()
        self.cache_backend = cache_backend or self._build_cache_backend()

        self.engine = ExecutionEngine(
            repository=self.repository,
            catalog=self.catalog,
            cache=RuleResultCache(self.cache_backend, metrics=self.metrics),
            transformer=ResultTransformer(self.config.default_currency),
            metrics=self.metrics,
            default_cache_minutes=self.config.default_cache_minutes,
        )
        self.rule_service = SmartRuleService(
            self.repository,
            self.engine,
            default_cache_minutes=self.config.default_cache_minutes,
        )
        self.section_resolver = SectionProductResolver(self.engine)

        @self.app.on_event("startup")
        async def _startup():
            await self.start()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.stop()

        self._setup_storefront_routes()

        self.app.state.storefront_service = self

    def _build_repository(self) -> RuleRepository:
        if self.config.rule_store == "memory":
            return InMemoryRuleRepository()
        return PostgresRuleRepository(self.config.postgres_dsn)

    def _build_catalog(self) -> CatalogStore:
        if self.config.catalog_backend == "memory":
            return InMemoryCatalogStore()
        return PostgresCatalogStore(self.config.postgres_dsn)

    def _build_cache_backend(self) -> CacheBackend:
        if self.config.cache_backend == "memory":
            return InMemoryCacheBackend()
        return RedisCacheBackend(self.config.redis_url)

    def _setup_storefront_routes(self):
        """Set up storefront-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "storefront",
                "message": "Storefront Platform - Smart Rule Service",
                "version": "1.0.0",
                "capabilities": ["smart_rules", "merchandising", "caching", "sections"]
            }

        @self.app.post("/storefront/smart-rules", response_model=SmartRuleResponse, status_code=201)
        async def create_rule(body: SmartRuleBody, organization_id: str = Depends(require_organization)):
            """Create a new smart rule."""
            rule = await self.rule_service.create_rule(organization_id, body.to_config())
            return SmartRuleResponse.from_rule(rule)

        @self.app.get("/storefront/smart-rules", response_model=SmartRuleListResponse)
        async def list_rules(
            active_only: bool = Query(False, alias="activeOnly", description="Only active rules"),
            organization_id: str = Depends(require_organization)
        ):
            """List the organization's smart rules."""
            rules = await self.rule_service.list_rules(organization_id, active_only)
            return SmartRuleListResponse(
                rules=[SmartRuleResponse.from_rule(rule) for rule in rules],
                total=len(rules)
            )

        @self.app.post("/storefront/smart-rules/preview", response_model=PreviewResult)
        async def preview_rule(
            body: SmartRuleBody,
            limit: int = Query(DEFAULT_PREVIEW_LIMIT, ge=1, le=MAX_LIMIT, description="Preview size"),
            organization_id: str = Depends(require_organization)
        ):
            """Run an unsaved rule without caching it."""
            return await self.engine.preview(body.to_config(), organization_id, limit)

        @self.app.post("/storefront/smart-rules/ad-hoc", response_model=ProductListResponse)
        async def execute_ad_hoc(body: SmartRuleBody, organization_id: str = Depends(require_organization)):
            """Execute an inline rule configuration."""
            products = await self.engine.execute_ad_hoc(body.to_config(), organization_id)
            return ProductListResponse(products=products, count=len(products))

        @self.app.delete("/storefront/smart-rules/cache")
        async def clear_organization_cache(organization_id: str = Depends(require_organization)):
            """Drop every cached rule result of the organization."""
            cleared = await self.engine.clear_organization_cache(organization_id)
            return {"success": cleared, "message": "Organization rule cache cleared" if cleared else "Cache unavailable"}

        @self.app.get("/storefront/smart-rules/{rule_id}", response_model=SmartRuleResponse)
        async def get_rule(rule_id: str, organization_id: str = Depends(require_organization)):
            """Get a smart rule."""
            rule = await self.rule_service.get_rule(rule_id, organization_id)
            return SmartRuleResponse.from_rule(rule)

        @self.app.put("/storefront/smart-rules/{rule_id}", response_model=SmartRuleResponse)
        async def update_rule(
            rule_id: str,
            body: SmartRuleUpdateRequest,
            organization_id: str = Depends(require_organization)
        ):
            """Update an existing smart rule."""
            rule = await self.rule_service.update_rule(rule_id, organization_id, body.to_changes())
            return SmartRuleResponse.from_rule(rule)

        @self.app.delete("/storefront/smart-rules/{rule_id}", status_code=204)
        async def delete_rule(rule_id: str, organization_id: str = Depends(require_organization)):
            """Delete a smart rule."""
            await self.rule_service.delete_rule(rule_id, organization_id)
            return Response(status_code=204)

        @self.app.get("/storefront/smart-rules/{rule_id}/execute", response_model=ProductListResponse)
        async def execute_rule(
            rule_id: str,
            limit: Optional[int] = Query(None, ge=1, description="Override the rule's limit"),
            organization_id: str = Depends(require_organization)
        ):
            """Execute a saved smart rule."""
            products = await self.engine.execute(rule_id, organization_id, limit)
            return ProductListResponse(rule_id=rule_id, products=products, count=len(products))

        @self.app.get("/storefront/smart-rules/{rule_id}/analytics")
        async def rule_analytics(rule_id: str, organization_id: str = Depends(require_organization)):
            """Execution statistics of a rule."""
            return await self.rule_service.get_analytics(rule_id, organization_id)

        @self.app.delete("/storefront/smart-rules/{rule_id}/cache")
        async def clear_rule_cache(rule_id: str, organization_id: str = Depends(require_organization)):
            """Drop the rule's cached results."""
            cleared = await self.engine.clear_rule_cache(rule_id, organization_id)
            return {"success": cleared, "message": "Rule cache cleared" if cleared else "Cache unavailable"}

        @self.app.post("/storefront/sections/products", response_model=ProductListResponse)
        async def section_products(section: SectionRequest, organization_id: str = Depends(require_organization)):
            """Resolve the products of a page section."""
            products = await self.section_resolver.resolve_section(section, organization_id)
            return ProductListResponse(rule_id=section.smart_rule_id, products=products, count=len(products))

    async def _check_dependencies(self):
        """Check storefront service dependencies."""
        dependencies = {}

        checks = (
            ("cache", self.cache_backend),
            ("catalog", self.catalog),
            ("rule_store", self.repository),
        )
        for name, component in checks:
            try:
                dependencies[name] = "ok" if await component.health_check() else "error"
            except Exception:
                dependencies[name] = "error"

        return dependencies

    async def start(self):
        """Start storefront service components."""
        await self.repository.start()
        await self.catalog.start()
        await self.cache_backend.start()

        self.logger.info("Storefront service started")

    async def stop(self):
        """Stop storefront service components."""
        await self.engine.close()
        await self.cache_backend.stop()
        await self.catalog.stop()
        await self.repository.stop()

        self.logger.info("Storefront service stopped")


def create_app():
    """Create storefront service application."""
    service = StorefrontService()
    return service.app


if __name__ == "__main__":
    service = StorefrontService()
    service.run()
