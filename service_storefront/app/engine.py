"""
Smart rule execution engine.

Pipeline for a saved rule:

    lookup -> cache check -> compile -> merchandise -> catalog query
           -> transform -> cache store -> background stat update

A cache hit returns straight away with no compilation and no stat update.
Preview and ad-hoc execution run the same pipeline without touching the
cache or rule statistics.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional, Set, Tuple

from shared.errors import NotFoundError, StorefrontException, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from .cache.rule_cache import RuleResultCache
from .catalog.base import CatalogStore
from .catalog.models import PreviewResult, ProductDTO
from .catalog.transformer import ResultTransformer
from .persistence.base import RuleRepository
from .rules.compiler import RuleCompiler
from .rules.merchandising import MerchandisedPlan, MerchandisingResolver
from .rules.models import (
    DEFAULT_ADHOC_LIMIT, DEFAULT_CACHE_MINUTES, SmartRule, clamp_limit,
    is_valid_identifier, utcnow,
)


DEFAULT_PREVIEW_LIMIT = 5


class ExecutionEngine:
    """Executes saved, previewed and ad-hoc smart rules."""

    def __init__(
        self,
        repository: RuleRepository,
        catalog: CatalogStore,
        cache: RuleResultCache,
        compiler: Optional[RuleCompiler] = None,
        resolver: Optional[MerchandisingResolver] = None,
        transformer: Optional[ResultTransformer] = None,
        metrics: Optional[MetricsCollector] = None,
        default_cache_minutes: int = DEFAULT_CACHE_MINUTES,
    ):
        self.repository = repository
        self.catalog = catalog
        self.cache = cache
        self.compiler = compiler or RuleCompiler()
        self.resolver = resolver or MerchandisingResolver()
        self.transformer = transformer or ResultTransformer()
        self.metrics = metrics
        self.default_cache_minutes = default_cache_minutes
        self.logger = get_logger("storefront.engine")
        self._stat_tasks: Set[asyncio.Task] = set()

    async def execute(
        self,
        rule_id: str,
        organization_id: str,
        limit_override: Optional[int] = None
    ) -> List[ProductDTO]:
        """Execute a saved rule, serving from cache when possible."""
        start_time = time.time()

        rule = None
        if is_valid_identifier(rule_id):
            rule = await self.repository.find_active_by_id(rule_id, organization_id)
        if rule is None:
            raise NotFoundError("Smart rule not found", {"rule_id": rule_id})

        # Overrides are normalised so equivalent requests share a cache entry
        override = clamp_limit(limit_override) if limit_override else None

        version = rule.updated_at.isoformat()
        cached = await self.cache.get_results(organization_id, rule.rule_id, override, version)
        if cached is not None:
            self._record_execution_metrics("cached", start_time)
            return cached

        records, _ = await self._run(rule, organization_id, override)
        results = self.transformer.transform_all(records)

        ttl_minutes = rule.cache_duration_minutes
        if ttl_minutes is None:
            ttl_minutes = self.default_cache_minutes
        await self.cache.set_results(organization_id, rule.rule_id, results, ttl_minutes, override, version)

        self._schedule_stat_update(rule.rule_id, organization_id)
        self._record_execution_metrics("live", start_time)

        self.logger.info(
            "Smart rule executed",
            rule_id=rule.rule_id,
            rule_type=rule.rule_type.value,
            results=len(results),
            execution_time_ms=round((time.time() - start_time) * 1000, 2),
        )
        return results

    async def preview(
        self,
        config: Dict[str, Any],
        organization_id: str,
        limit: int = DEFAULT_PREVIEW_LIMIT
    ) -> PreviewResult:
        """Run an unsaved rule body and count everything it would match."""
        start_time = time.time()

        rule = SmartRule.from_config(config, organization_id, rule_id="preview")
        records, merchandised = await self._run(rule, organization_id, clamp_limit(limit, DEFAULT_PREVIEW_LIMIT))
        results = self.transformer.transform_all(records)

        pinned_found = sum(1 for record in records if record.get("id") in merchandised.pinned_ids)
        estimated_count = await self.catalog.count(merchandised.main) + pinned_found

        execution_time_ms = round((time.time() - start_time) * 1000, 2)
        self._record_execution_metrics("preview", start_time)

        return PreviewResult(
            results=results,
            estimated_count=estimated_count,
            execution_time_ms=execution_time_ms,
        )

    async def execute_ad_hoc(self, config: Dict[str, Any], organization_id: str) -> List[ProductDTO]:
        """Execute an inline rule configuration. Never cached."""
        start_time = time.time()

        rule = SmartRule.from_config(config, organization_id, rule_id="ad-hoc", default_limit=DEFAULT_ADHOC_LIMIT)
        records, _ = await self._run(rule, organization_id, None)

        self._record_execution_metrics("ad_hoc", start_time)
        return self.transformer.transform_all(records)

    async def clear_rule_cache(self, rule_id: str, organization_id: str) -> bool:
        # Cache keys are matched by prefix, so the id must not carry pattern characters
        if not is_valid_identifier(rule_id):
            raise ValidationError("Malformed rule id", {"rule_id": rule_id})
        return await self.cache.invalidate_rule(organization_id, rule_id)

    async def clear_organization_cache(self, organization_id: str) -> bool:
        return await self.cache.invalidate_organization(organization_id)

    async def close(self):
        """Wait for pending stat updates."""
        if self._stat_tasks:
            await asyncio.gather(*list(self._stat_tasks), return_exceptions=True)

    async def _run(
        self,
        rule: SmartRule,
        organization_id: str,
        limit_override: Optional[int]
    ) -> Tuple[List[Dict[str, Any]], MerchandisedPlan]:
        plan = self.compiler.compile(rule, organization_id, limit_override=limit_override)
        merchandised = self.resolver.resolve(plan, rule, organization_id)

        pinned: List[Dict[str, Any]] = []
        if merchandised.pinned is not None:
            pinned = self.resolver.order_pinned(merchandised, await self.catalog.query(merchandised.pinned))

        remainder: List[Dict[str, Any]] = []
        main = merchandised.main_with_remaining(len(pinned))
        if main is not None:
            remainder = await self.catalog.query(main)

        return self.resolver.merge(merchandised, pinned, remainder), merchandised

    def _schedule_stat_update(self, rule_id: str, organization_id: str):
        task = asyncio.create_task(self._update_stats(rule_id, organization_id))
        self._stat_tasks.add(task)
        task.add_done_callback(self._stat_tasks.discard)

    async def _update_stats(self, rule_id: str, organization_id: str):
        try:
            await self.repository.record_execution(rule_id, organization_id, utcnow())
        except StorefrontException as e:
            self.logger.warning("Failed to update rule stats", rule_id=rule_id, code=e.code, error=e.message)
        except Exception as e:
            self.logger.error("Unexpected error updating rule stats", rule_id=rule_id, error=str(e))

    def _record_execution_metrics(self, mode: str, start_time: float):
        if self.metrics:
            self.metrics.increment_counter("smart_rule_executions_total", mode=mode)
            self.metrics.observe_histogram("smart_rule_execution_duration_seconds", time.time() - start_time, mode=mode)
