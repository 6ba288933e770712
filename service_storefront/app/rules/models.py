"""
Smart rule data models for the Storefront Service.
"""

import re
from typing import Dict, Any, Optional, List, Union
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from shared.errors import InvalidReferenceError, ValidationError


MAX_LIMIT = 50
DEFAULT_RULE_LIMIT = 12
DEFAULT_ADHOC_LIMIT = 10
DEFAULT_CACHE_MINUTES = 15

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class RuleType(str, Enum):
    """Merchandising rule types."""
    NEW_ARRIVALS = "new_arrivals"
    BEST_SELLERS = "best_sellers"
    CLEARANCE_SALE = "clearance_sale"
    TRENDING = "trending"
    CATEGORY_BASED = "category_based"
    LOW_STOCK = "low_stock"
    DEAD_STOCK = "dead_stock"
    HEAVY_DISCOUNT = "heavy_discount"
    PRICE_RANGE = "price_range"
    MANUAL_SELECTION = "manual_selection"
    CUSTOM_QUERY = "custom_query"


class FilterOperator(str, Enum):
    """Rule filter operators."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    BETWEEN = "between"
    IN = "in"


class SortOrder(str, Enum):
    """Sort directions."""
    ASC = "asc"
    DESC = "desc"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_identifier(value: Any) -> bool:
    """Whether a value can reference a catalog or rule record."""
    return isinstance(value, str) and bool(_IDENTIFIER_RE.match(value))


def parse_identifier(value: Any) -> str:
    """Return the identifier or raise InvalidReferenceError."""
    if not is_valid_identifier(value):
        raise InvalidReferenceError("Malformed identifier", {"value": repr(value)})
    return value


def clamp_limit(requested: Optional[int], fallback: int = DEFAULT_ADHOC_LIMIT) -> int:
    """Clamp a requested result count into [1, MAX_LIMIT]."""
    try:
        value = int(requested) if requested else fallback
    except (TypeError, ValueError):
        value = fallback
    return max(1, min(value, MAX_LIMIT))


def id_list(value: Any) -> List[str]:
    """String ids of a list value; anything else is treated as empty."""
    if not isinstance(value, (list, tuple)):
        return []
    return [item for item in value if isinstance(item, str)]


def minutes_or(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass
class RuleFilter:
    """A single {field, operator, value, value2} refinement."""
    field: str
    operator: Union[FilterOperator, str] = FilterOperator.EQUALS
    value: Any = None
    value2: Any = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuleFilter":
        raw_operator = data.get("operator") or FilterOperator.EQUALS.value
        try:
            operator: Union[FilterOperator, str] = FilterOperator(raw_operator)
        except ValueError:
            # Unknown operators survive parsing and are dropped by the translator
            operator = str(raw_operator)
        return cls(
            field=str(data.get("field") or ""),
            operator=operator,
            value=data.get("value"),
            value2=data.get("value2"),
        )

    def to_dict(self) -> Dict[str, Any]:
        operator = self.operator.value if isinstance(self.operator, FilterOperator) else self.operator
        data = {"field": self.field, "operator": operator, "value": self.value}
        if self.value2 is not None:
            data["value2"] = self.value2
        return data


@dataclass
class SmartRule:
    """Persisted declarative merchandising rule."""
    rule_id: Optional[str]
    organization_id: str
    rule_type: RuleType
    name: str = ""
    description: Optional[str] = None
    filters: List[RuleFilter] = field(default_factory=list)
    sort_by: Optional[str] = None
    sort_order: Optional[SortOrder] = None
    limit: int = DEFAULT_RULE_LIMIT
    category_id: Optional[str] = None
    pinned_product_ids: List[str] = field(default_factory=list)
    excluded_product_ids: List[str] = field(default_factory=list)
    manual_product_ids: List[str] = field(default_factory=list)
    cache_duration_minutes: int = DEFAULT_CACHE_MINUTES
    is_active: bool = True
    execution_count: int = 0
    last_executed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def get_filter(self, name: str) -> Optional[RuleFilter]:
        """First filter targeting `name`, if any."""
        for rule_filter in self.filters:
            if rule_filter.field == name:
                return rule_filter
        return None

    def get_filter_value(self, name: str) -> Any:
        rule_filter = self.get_filter(name)
        return rule_filter.value if rule_filter else None

    @classmethod
    def from_config(
        cls,
        config: Dict[str, Any],
        organization_id: str,
        rule_id: Optional[str] = None,
        default_limit: int = DEFAULT_ADHOC_LIMIT,
    ) -> "SmartRule":
        """Build a rule from its public (camelCase) representation."""
        raw_type = config.get("ruleType")
        try:
            rule_type = RuleType(raw_type)
        except ValueError:
            raise ValidationError(f"Unsupported rule type: {raw_type}", {"ruleType": raw_type})

        raw_order = config.get("sortOrder")
        sort_order = SortOrder.ASC if raw_order == "asc" else SortOrder.DESC if raw_order == "desc" else None

        cache_minutes = config.get("cacheDurationMinutes", config.get("cacheDuration"))
        raw_sort = config.get("sortBy")
        sort_by = raw_sort if isinstance(raw_sort, str) else None
        filters = config.get("filters") if isinstance(config.get("filters"), (list, tuple)) else []

        return cls(
            rule_id=rule_id or config.get("id"),
            organization_id=organization_id,
            rule_type=rule_type,
            name=config.get("name") or "",
            description=config.get("description"),
            filters=[RuleFilter.from_dict(f) for f in filters if isinstance(f, dict)],
            sort_by=sort_by or None,
            sort_order=sort_order,
            limit=config.get("limit") or default_limit,
            category_id=config.get("categoryId"),
            pinned_product_ids=id_list(config.get("pinnedProductIds")),
            excluded_product_ids=id_list(config.get("excludedProductIds")),
            manual_product_ids=id_list(config.get("manualProductIds")),
            cache_duration_minutes=minutes_or(cache_minutes, DEFAULT_CACHE_MINUTES),
            is_active=config.get("isActive", True),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Public (camelCase) representation."""
        return {
            "id": self.rule_id,
            "organizationId": self.organization_id,
            "name": self.name,
            "description": self.description,
            "ruleType": self.rule_type.value,
            "filters": [f.to_dict() for f in self.filters],
            "sortBy": self.sort_by,
            "sortOrder": self.sort_order.value if self.sort_order else None,
            "limit": self.limit,
            "categoryId": self.category_id,
            "pinnedProductIds": list(self.pinned_product_ids),
            "excludedProductIds": list(self.excluded_product_ids),
            "manualProductIds": list(self.manual_product_ids),
            "cacheDurationMinutes": self.cache_duration_minutes,
            "isActive": self.is_active,
            "executionCount": self.execution_count,
            "lastExecutedAt": self.last_executed_at,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


class CamelModel(BaseModel):
    """Request/response models speak the camelCase rule contract."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RuleFilterModel(CamelModel):
    """Filter entry of a rule body."""
    field: str = Field(..., description="Catalog field or strategy parameter")
    operator: str = Field("equals", description="Filter operator")
    value: Any = Field(None, description="Filter value")
    value2: Any = Field(None, description="Upper bound for 'between'")


class SmartRuleBody(CamelModel):
    """Rule body used for creation, preview and ad-hoc execution."""
    name: str = Field("", description="Rule name")
    description: Optional[str] = Field(None, description="Rule description")
    rule_type: str = Field(..., description="Rule type")
    filters: List[RuleFilterModel] = Field(default_factory=list)
    sort_by: Optional[str] = Field(None, description="Sort field")
    sort_order: Optional[str] = Field(None, description="asc or desc")
    limit: Optional[int] = Field(None, description="Requested result count")
    category_id: Optional[str] = Field(None, description="Category for category_based rules")
    pinned_product_ids: List[str] = Field(default_factory=list)
    excluded_product_ids: List[str] = Field(default_factory=list)
    manual_product_ids: List[str] = Field(default_factory=list)
    cache_duration_minutes: Optional[int] = Field(None, description="Cache TTL in minutes")
    is_active: bool = Field(True, description="Whether the rule is active")

    def to_config(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class SmartRuleUpdateRequest(CamelModel):
    """Partial update of a saved rule."""
    name: Optional[str] = None
    description: Optional[str] = None
    rule_type: Optional[str] = None
    filters: Optional[List[RuleFilterModel]] = None
    sort_by: Optional[str] = None
    sort_order: Optional[str] = None
    limit: Optional[int] = None
    category_id: Optional[str] = None
    pinned_product_ids: Optional[List[str]] = None
    excluded_product_ids: Optional[List[str]] = None
    manual_product_ids: Optional[List[str]] = None
    cache_duration_minutes: Optional[int] = None
    is_active: Optional[bool] = None

    def to_changes(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True)


class SmartRuleResponse(CamelModel):
    """Saved rule as returned to admin callers."""
    id: str
    organization_id: str
    name: str
    description: Optional[str]
    rule_type: str
    filters: List[Dict[str, Any]]
    sort_by: Optional[str]
    sort_order: Optional[str]
    limit: int
    category_id: Optional[str]
    pinned_product_ids: List[str]
    excluded_product_ids: List[str]
    manual_product_ids: List[str]
    cache_duration_minutes: int
    is_active: bool
    execution_count: int
    last_executed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_rule(cls, rule: SmartRule) -> "SmartRuleResponse":
        return cls.model_validate(rule.to_dict())


class SmartRuleListResponse(BaseModel):
    """Response model for rule list."""
    rules: List[SmartRuleResponse]
    total: int
