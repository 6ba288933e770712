"""
Smart rule repository interface.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from ..rules.models import SmartRule


class RuleRepository(ABC):
    """Tenant-scoped storage for smart rules.

    Every lookup takes the organization id; a rule belonging to another
    organization behaves exactly like a missing one.
    """

    @abstractmethod
    async def find_active_by_id(self, rule_id: str, organization_id: str) -> Optional[SmartRule]:
        """Active rule by id, or None."""

    @abstractmethod
    async def get(self, rule_id: str, organization_id: str) -> Optional[SmartRule]:
        """Rule by id regardless of its active flag."""

    @abstractmethod
    async def list_for_organization(self, organization_id: str, active_only: bool = False) -> List[SmartRule]:
        ...

    @abstractmethod
    async def create(self, rule: SmartRule) -> SmartRule:
        """Persist a new rule, assigning an id when it has none."""

    @abstractmethod
    async def update(self, rule: SmartRule) -> SmartRule:
        ...

    @abstractmethod
    async def delete(self, rule_id: str, organization_id: str) -> bool:
        ...

    @abstractmethod
    async def record_execution(self, rule_id: str, organization_id: str, executed_at: datetime):
        """Increment the execution counter. Raises StatUpdateError on failure."""

    async def start(self):
        pass

    async def stop(self):
        pass

    async def health_check(self) -> bool:
        return True
