"""
Catalog store interface consumed by the execution engine.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List

from ..rules.plan import CompiledQueryPlan


class CatalogStore(ABC):
    """Read-only query capability over a product catalog."""

    @abstractmethod
    async def query(self, plan: CompiledQueryPlan) -> List[Dict[str, Any]]:
        """Records matching the plan's stages, sorted and limited."""

    @abstractmethod
    async def count(self, plan: CompiledQueryPlan) -> int:
        """Number of records matching the plan's stages, ignoring the limit."""

    async def start(self):
        """Open connections. No-op by default."""

    async def stop(self):
        """Close connections. No-op by default."""

    async def health_check(self) -> bool:
        return True
