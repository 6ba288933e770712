"""
Smart rule administration.

CRUD over the rule repository with save-time validation. Updates and
deletes drop the rule's cached results before returning, so the next
execution always reflects the saved rule.
"""

from typing import Any, Dict, List

from shared.errors import NotFoundError
from shared.logging import get_logger

from .engine import ExecutionEngine
from .persistence.base import RuleRepository
from .rules.models import DEFAULT_CACHE_MINUTES, DEFAULT_RULE_LIMIT, SmartRule, utcnow
from .rules.validator import validate_smart_rule


# Fields a caller may never set through create or update
_SERVER_FIELDS = ("id", "organizationId", "executionCount", "lastExecutedAt", "createdAt", "updatedAt")


class SmartRuleService:
    """Create, read, update and delete smart rules for an organization."""

    def __init__(
        self,
        repository: RuleRepository,
        engine: ExecutionEngine,
        default_cache_minutes: int = DEFAULT_CACHE_MINUTES
    ):
        self.repository = repository
        self.engine = engine
        self.default_cache_minutes = default_cache_minutes
        self.logger = get_logger("storefront.rule_service")

    async def create_rule(self, organization_id: str, config: Dict[str, Any]) -> SmartRule:
        body = {k: v for k, v in config.items() if k not in _SERVER_FIELDS}
        body.setdefault("cacheDurationMinutes", self.default_cache_minutes)

        rule = SmartRule.from_config(body, organization_id, default_limit=DEFAULT_RULE_LIMIT)
        validate_smart_rule(rule)

        created = await self.repository.create(rule)
        self.logger.info("Smart rule created", rule_id=created.rule_id, rule_type=created.rule_type.value)
        return created

    async def get_rule(self, rule_id: str, organization_id: str) -> SmartRule:
        rule = await self.repository.get(rule_id, organization_id)
        if rule is None:
            raise NotFoundError("Smart rule not found", {"rule_id": rule_id})
        return rule

    async def list_rules(self, organization_id: str, active_only: bool = False) -> List[SmartRule]:
        return await self.repository.list_for_organization(organization_id, active_only)

    async def update_rule(self, rule_id: str, organization_id: str, changes: Dict[str, Any]) -> SmartRule:
        existing = await self.get_rule(rule_id, organization_id)

        merged = existing.to_dict()
        merged.update({k: v for k, v in changes.items() if k not in _SERVER_FIELDS})

        updated = SmartRule.from_config(merged, organization_id, rule_id=existing.rule_id, default_limit=existing.limit)
        updated.execution_count = existing.execution_count
        updated.last_executed_at = existing.last_executed_at
        updated.created_at = existing.created_at
        updated.updated_at = utcnow()
        validate_smart_rule(updated)

        saved = await self.repository.update(updated)
        await self.engine.clear_rule_cache(rule_id, organization_id)

        self.logger.info("Smart rule updated", rule_id=rule_id)
        return saved

    async def delete_rule(self, rule_id: str, organization_id: str):
        deleted = await self.repository.delete(rule_id, organization_id)
        if not deleted:
            raise NotFoundError("Smart rule not found", {"rule_id": rule_id})

        await self.engine.clear_rule_cache(rule_id, organization_id)
        self.logger.info("Smart rule deleted", rule_id=rule_id)

    async def get_analytics(self, rule_id: str, organization_id: str) -> Dict[str, Any]:
        rule = await self.get_rule(rule_id, organization_id)
        return {
            "ruleId": rule.rule_id,
            "name": rule.name,
            "executionCount": rule.execution_count or 0,
            "lastExecutedAt": rule.last_executed_at.isoformat() if rule.last_executed_at else None,
            "isActive": rule.is_active,
            "cacheDurationMinutes": rule.cache_duration_minutes,
        }
