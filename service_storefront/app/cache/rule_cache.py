"""
Cache-aside wrapper for smart rule results.

Key layout:

    smart_rule_v1:{organization_id}:{rule_id}              rule's own limit
    smart_rule_v1:{organization_id}:{rule_id}:limit:{n}    caller override

Entries carry the version of the rule they were computed from. A read with a
different version is a miss, so a write racing an update or delete never
serves results of the previous rule body.

Backend failures never fail an execution: reads degrade to a miss, writes
are skipped and invalidation failures are logged, leaving the TTL to expire
stale entries.
"""

import json
from datetime import datetime, timezone
from typing import List, Optional

from shared.errors import CacheUnavailableError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..catalog.models import ProductDTO
from .backends import CacheBackend


CACHE_PREFIX = "smart_rule_v1"


def organization_prefix(organization_id: str) -> str:
    return f"{CACHE_PREFIX}:{organization_id}:"


def rule_key(organization_id: str, rule_id: str, limit_override: Optional[int] = None) -> str:
    key = f"{CACHE_PREFIX}:{organization_id}:{rule_id}"
    if limit_override is not None:
        key = f"{key}:limit:{limit_override}"
    return key


class RuleResultCache:
    """Stores transformed rule results per (organization, rule, limit)."""

    def __init__(self, backend: CacheBackend, metrics: Optional[MetricsCollector] = None):
        self.backend = backend
        self.metrics = metrics
        self.logger = get_logger("storefront.cache")

    def _record(self, result: str):
        if self.metrics:
            self.metrics.increment_counter("smart_rule_cache_events_total", result=result)

    async def get_results(
        self,
        organization_id: str,
        rule_id: str,
        limit_override: Optional[int] = None,
        version: Optional[str] = None
    ) -> Optional[List[ProductDTO]]:
        key = rule_key(organization_id, rule_id, limit_override)
        try:
            cached = await self.backend.get(key)
        except CacheUnavailableError as e:
            self.logger.warning("Cache read failed, treating as miss", cache_key=key, error=e.message)
            self._record("error")
            return None

        if cached is None:
            self._record("miss")
            return None

        try:
            data = json.loads(cached)
            stored_version = data.get("ruleVersion")
            results = [ProductDTO.model_validate(item) for item in data["results"]]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            self.logger.warning("Discarding unreadable cache entry", cache_key=key, error=str(e))
            self._record("miss")
            return None

        if version is not None and stored_version != version:
            self.logger.debug("Discarding cache entry of an older rule version", cache_key=key)
            self._record("miss")
            return None

        self._record("hit")
        self.logger.debug("Cache hit for smart rule", cache_key=key)
        return results

    async def set_results(
        self,
        organization_id: str,
        rule_id: str,
        results: List[ProductDTO],
        ttl_minutes: int,
        limit_override: Optional[int] = None,
        version: Optional[str] = None
    ) -> bool:
        if ttl_minutes <= 0:
            return False

        key = rule_key(organization_id, rule_id, limit_override)
        payload = json.dumps({
            "results": [result.model_dump(by_alias=True) for result in results],
            "storedAt": datetime.now(timezone.utc).isoformat(),
            "ruleVersion": version,
        })
        try:
            await self.backend.set(key, payload, ttl_minutes * 60)
        except CacheUnavailableError as e:
            self.logger.warning("Cache write failed", cache_key=key, error=e.message)
            return False

        self.logger.debug("Cached smart rule results", cache_key=key, ttl_minutes=ttl_minutes)
        return True

    async def invalidate_rule(self, organization_id: str, rule_id: str) -> bool:
        """Drop the rule's entry and every limit-override variant."""
        key = rule_key(organization_id, rule_id)
        try:
            await self.backend.delete(key)
            await self.backend.delete_prefix(f"{key}:")
        except CacheUnavailableError as e:
            self.logger.error("Cache invalidation failed", cache_key=key, error=e.message)
            return False

        self.logger.info("Invalidated smart rule cache", rule_id=rule_id, organization_id=organization_id)
        return True

    async def invalidate_organization(self, organization_id: str) -> bool:
        prefix = organization_prefix(organization_id)
        try:
            count = await self.backend.delete_prefix(prefix)
        except CacheUnavailableError as e:
            self.logger.error("Organization cache invalidation failed", organization_id=organization_id, error=e.message)
            return False

        self.logger.info("Invalidated organization smart rule cache", organization_id=organization_id, count=count)
        return True
