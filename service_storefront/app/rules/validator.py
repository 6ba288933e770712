"""
Save-time validation of smart rule bodies.
"""

from typing import Dict, FrozenSet

from shared.errors import ValidationError
from .models import FilterOperator, RuleType, SmartRule


MAX_SAVED_LIMIT = 100

# Filter fields a merchant may set per rule type.
RULE_FILTER_MATRIX: Dict[RuleType, FrozenSet[str]] = {
    RuleType.NEW_ARRIVALS: frozenset({"createdAt", "tags", "category", "brand", "price"}),
    RuleType.BEST_SELLERS: frozenset({"lastSold", "tags", "category", "brand", "price"}),
    RuleType.TRENDING: frozenset({"lastSold", "tags", "category", "brand"}),
    RuleType.CLEARANCE_SALE: frozenset({"price", "category", "brand", "tags"}),
    RuleType.HEAVY_DISCOUNT: frozenset({"minDiscount", "price", "category", "brand", "tags"}),
    RuleType.CATEGORY_BASED: frozenset({"category", "brand", "price", "tags"}),
    RuleType.LOW_STOCK: frozenset({"threshold", "quantity", "stock", "category", "brand"}),
    RuleType.DEAD_STOCK: frozenset({"dormantDays", "category", "brand"}),
    RuleType.PRICE_RANGE: frozenset({"price_min", "price_max", "price", "category", "brand", "tags"}),
    RuleType.CUSTOM_QUERY: frozenset({"category", "brand", "price", "stock", "tags", "createdAt", "lastSold"}),
    RuleType.MANUAL_SELECTION: frozenset(),
}


def validate_smart_rule(rule: SmartRule) -> None:
    """Raise ValidationError when a rule cannot be saved as configured."""
    if not isinstance(rule.limit, int) or not 1 <= rule.limit <= MAX_SAVED_LIMIT:
        raise ValidationError(
            f"Limit must be between 1 and {MAX_SAVED_LIMIT}",
            {"limit": rule.limit}
        )

    if rule.cache_duration_minutes < 0:
        raise ValidationError(
            "Cache duration cannot be negative",
            {"cacheDurationMinutes": rule.cache_duration_minutes}
        )

    # Manual selection doesn't use filters
    if rule.rule_type == RuleType.MANUAL_SELECTION:
        return

    allowed_fields = RULE_FILTER_MATRIX[rule.rule_type]
    for rule_filter in rule.filters:
        if rule_filter.field not in allowed_fields:
            raise ValidationError(
                f"Filter '{rule_filter.field}' is not allowed for rule type '{rule.rule_type.value}'",
                {"field": rule_filter.field, "ruleType": rule.rule_type.value}
            )
        if not isinstance(rule_filter.operator, FilterOperator):
            raise ValidationError(
                f"Unsupported operator '{rule_filter.operator}' on filter '{rule_filter.field}'",
                {"field": rule_filter.field, "operator": rule_filter.operator}
            )

    if rule.rule_type == RuleType.CATEGORY_BASED:
        if rule.get_filter("category") is None and not rule.category_id:
            raise ValidationError(
                "Rule type 'category_based' requires the 'category' filter or a categoryId",
                {"ruleType": rule.rule_type.value}
            )

    if rule.rule_type == RuleType.PRICE_RANGE:
        if rule.get_filter("price_min") is None and rule.get_filter("price_max") is None:
            raise ValidationError(
                "Rule type 'price_range' requires a 'price_min' or 'price_max' filter",
                {"ruleType": rule.rule_type.value}
            )
