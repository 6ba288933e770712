"""
Generic filter translation for smart rules.
"""

from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from shared.logging import get_logger
from shared.errors import InvalidReferenceError
from .models import FilterOperator, RuleFilter
from .plan import (
    CATALOG_FIELDS, DATE_FIELDS, NUMERIC_FIELDS,
    Condition, Op, Predicate, all_of,
)


FIELD_ALIASES: Dict[str, str] = {
    "category": "categoryId",
    "brand": "brandId",
    "price": "sellingPrice",
    "stock": "inventory.quantity",
    "tags": "tags",
}

# Parameters read by rule-type strategies. They never name a catalog field.
STRATEGY_PARAMETERS: FrozenSet[str] = frozenset({
    "price_min", "price_max", "minDiscount", "dormantDays", "threshold",
})

_SIMPLE_OPERATORS = {
    FilterOperator.EQUALS: Op.EQ,
    FilterOperator.NOT_EQUALS: Op.NE,
    FilterOperator.GREATER_THAN: Op.GT,
    FilterOperator.LESS_THAN: Op.LT,
}


def is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


class FilterTranslator:
    """Maps `{field, operator, value, value2}` triples to predicate fragments."""

    def __init__(self, aliases: Optional[Dict[str, str]] = None):
        self.aliases = dict(FIELD_ALIASES if aliases is None else aliases)
        self.logger = get_logger("storefront.filter_translator")

    def resolve_field(self, field: str) -> str:
        return self.aliases.get(field, field)

    def translate(self, field: str, operator: Any, value: Any, value2: Any = None) -> Optional[Predicate]:
        """Translate one filter. Returns None when the filter is a no-op."""
        if not field or field in STRATEGY_PARAMETERS or is_empty(value):
            return None

        target = self.resolve_field(field)
        if target not in CATALOG_FIELDS:
            self.logger.warning("Ignoring filter on unknown field", field=field)
            return None

        try:
            operator = FilterOperator(operator)
        except ValueError:
            self.logger.warning("Ignoring filter with unknown operator", field=field, operator=operator)
            return None

        try:
            if operator in _SIMPLE_OPERATORS:
                return Condition(target, _SIMPLE_OPERATORS[operator], self._coerce(target, value))

            if operator == FilterOperator.CONTAINS:
                return Condition(target, Op.CONTAINS, str(value))

            if operator == FilterOperator.IN:
                values = value if isinstance(value, (list, tuple, set)) else [value]
                coerced = [self._coerce(target, v) for v in values if not is_empty(v)]
                if not coerced:
                    return None
                return Condition(target, Op.IN, tuple(coerced))

            if operator == FilterOperator.BETWEEN:
                if is_empty(value2):
                    self.logger.debug("Dropping 'between' filter without upper bound", field=field)
                    return None
                return all_of(
                    Condition(target, Op.GTE, self._coerce(target, value)),
                    Condition(target, Op.LTE, self._coerce(target, value2)),
                )
        except InvalidReferenceError as e:
            self.logger.warning("Ignoring filter with unusable value", field=field, error=e.message)
            return None

        return None

    def translate_all(self, filters: Iterable[RuleFilter], skip_fields: FrozenSet[str] = frozenset()) -> List[Predicate]:
        """Translate every applicable filter, in order, skipping `skip_fields`."""
        predicates = []
        for rule_filter in filters:
            if rule_filter.field in skip_fields:
                continue
            predicate = self.translate(rule_filter.field, rule_filter.operator, rule_filter.value, rule_filter.value2)
            if predicate is not None:
                predicates.append(predicate)
        return predicates

    def _coerce(self, target: str, value: Any) -> Any:
        if target in NUMERIC_FIELDS:
            return to_number(value)
        if target in DATE_FIELDS:
            return to_datetime(value)
        return value


def to_number(value: Any) -> float:
    """Coerce a filter value to a number or raise InvalidReferenceError."""
    if isinstance(value, bool):
        raise InvalidReferenceError("Expected a number", {"value": value})
    if isinstance(value, (int, float)):
        return value
    try:
        return float(str(value).strip())
    except ValueError:
        raise InvalidReferenceError("Expected a number", {"value": value})


def to_datetime(value: Any) -> datetime:
    """Coerce a filter value to an aware datetime or raise InvalidReferenceError."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            raise InvalidReferenceError("Expected an ISO-8601 date", {"value": value})
    else:
        raise InvalidReferenceError("Expected an ISO-8601 date", {"value": value})

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
