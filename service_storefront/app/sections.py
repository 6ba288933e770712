"""
Product resolution for storefront page sections.
"""

from typing import Any, Dict, List, Optional

from pydantic import Field

from shared.errors import NotFoundError, ValidationError
from shared.logging import get_logger

from .catalog.models import ProductDTO
from .engine import ExecutionEngine
from .rules.models import CamelModel, RuleType


DEFAULT_LATEST_LIMIT = 8


class ManualData(CamelModel):
    product_ids: List[str] = Field(default_factory=list)


class SectionRequest(CamelModel):
    """Data binding of a product section."""
    data_source: Optional[str] = Field(None, description="'manual' or 'smart'")
    smart_rule_id: Optional[str] = None
    manual_data: Optional[ManualData] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class SectionProductResolver:
    """Resolves the products shown by a section."""

    def __init__(self, engine: ExecutionEngine):
        self.engine = engine
        self.logger = get_logger("storefront.sections")

    async def resolve_section(self, section: SectionRequest, organization_id: str) -> List[ProductDTO]:
        config = section.config or {}

        if section.data_source == "manual" and section.manual_data and section.manual_data.product_ids:
            return await self.engine.execute_ad_hoc({
                "ruleType": RuleType.MANUAL_SELECTION.value,
                "manualProductIds": section.manual_data.product_ids,
            }, organization_id)

        if section.data_source == "smart":
            if section.smart_rule_id:
                try:
                    return await self.engine.execute(section.smart_rule_id, organization_id)
                except NotFoundError:
                    # A deleted or deactivated rule renders an empty section
                    self.logger.warning("Section references missing smart rule", rule_id=section.smart_rule_id)
                    return []

            if config.get("ruleType"):
                try:
                    return await self.engine.execute_ad_hoc(config, organization_id)
                except ValidationError as e:
                    self.logger.warning("Section carries an unusable rule config", error=e.message)
                    return []

            return await self.engine.execute_ad_hoc({
                "ruleType": RuleType.CUSTOM_QUERY.value,
                "limit": config.get("limit") or DEFAULT_LATEST_LIMIT,
            }, organization_id)

        return []
