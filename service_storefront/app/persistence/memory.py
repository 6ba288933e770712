"""
In-memory rule repository for local development and tests.
"""

import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from shared.errors import StatUpdateError
from shared.logging import get_logger
from ..rules.models import SmartRule
from .base import RuleRepository


class InMemoryRuleRepository(RuleRepository):
    """Rules kept in a dict keyed by (organization_id, rule_id)."""

    def __init__(self):
        self.logger = get_logger("storefront.persistence.memory")
        self._rules: Dict[Tuple[str, str], SmartRule] = {}

    async def find_active_by_id(self, rule_id: str, organization_id: str) -> Optional[SmartRule]:
        rule = self._rules.get((organization_id, rule_id))
        if rule is None or not rule.is_active:
            return None
        return replace(rule)

    async def get(self, rule_id: str, organization_id: str) -> Optional[SmartRule]:
        rule = self._rules.get((organization_id, rule_id))
        return replace(rule) if rule else None

    async def list_for_organization(self, organization_id: str, active_only: bool = False) -> List[SmartRule]:
        rules = [
            replace(rule) for (org, _), rule in self._rules.items()
            if org == organization_id and (rule.is_active or not active_only)
        ]
        return sorted(rules, key=lambda r: r.created_at, reverse=True)

    async def create(self, rule: SmartRule) -> SmartRule:
        stored = replace(rule, rule_id=rule.rule_id or str(uuid.uuid4()))
        self._rules[(stored.organization_id, stored.rule_id)] = stored
        self.logger.info("Rule saved", rule_id=stored.rule_id, name=stored.name)
        return replace(stored)

    async def update(self, rule: SmartRule) -> SmartRule:
        self._rules[(rule.organization_id, rule.rule_id)] = replace(rule)
        return replace(rule)

    async def delete(self, rule_id: str, organization_id: str) -> bool:
        return self._rules.pop((organization_id, rule_id), None) is not None

    async def record_execution(self, rule_id: str, organization_id: str, executed_at: datetime):
        rule = self._rules.get((organization_id, rule_id))
        if rule is None:
            raise StatUpdateError("Rule no longer exists", {"rule_id": rule_id})
        rule.execution_count += 1
        rule.last_executed_at = executed_at
