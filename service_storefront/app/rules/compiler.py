"""
Rule compiler for the Storefront Service.

Each rule type maps to a pure strategy function returning a `StrategyPatch`
(extra predicates, extra stages and a sort preference). The compiler
combines the tenant base predicate, the strategy patch and the generic
filters into a `CompiledQueryPlan`. Rules are read, never modified.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from shared.logging import get_logger
from shared.errors import InvalidReferenceError
from .filters import FilterTranslator, to_number
from .models import (
    MAX_LIMIT, DEFAULT_ADHOC_LIMIT, RuleType, SmartRule, SortOrder,
    clamp_limit, is_valid_identifier, parse_identifier,
)
from .plan import (
    MATCH_NOTHING, Arithmetic, CompiledQueryPlan, ComputeStage, Condition,
    ExpressionCondition, FieldRef, Literal, MatchStage, Op, Predicate, Stage,
    all_of, any_of,
)


NEW_ARRIVALS_DAYS = 30
TRENDING_DAYS = 7
CLEARANCE_MIN_PERCENT = 10
LOW_STOCK_THRESHOLD = 10
DEAD_STOCK_MIN_QUANTITY = 5
DEAD_STOCK_DORMANT_DAYS = 90
PRICE_RANGE_MIN = 0
PRICE_RANGE_MAX = 999999

SORTABLE_FIELDS = frozenset({
    "createdAt", "updatedAt", "sellingPrice", "discountedPrice",
    "name", "lastSold", "salesCount",
})

SortSpec = Tuple[Tuple[str, SortOrder], ...]


@dataclass(frozen=True)
class StrategyPatch:
    """What a rule-type strategy adds on top of the base predicate."""
    predicates: Tuple[Predicate, ...] = ()
    stages: Tuple[Stage, ...] = ()
    sort: SortSpec = ()
    force_sort: bool = False


def parse_days(value: Any) -> Optional[int]:
    """Read a day window such as 30, "30" or "30d"."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if value > 0 else None
    match = re.match(r"^\s*(\d+)", str(value))
    if not match:
        return None
    days = int(match.group(1))
    return days if days > 0 else None


def _number_or(value: Any, default: float) -> float:
    if value is None:
        return default
    try:
        return to_number(value)
    except InvalidReferenceError:
        return default


# --- strategies ---------------------------------------------------------

def _new_arrivals(rule: SmartRule, now: datetime) -> StrategyPatch:
    days = parse_days(rule.get_filter_value("createdAt")) or NEW_ARRIVALS_DAYS
    return StrategyPatch(
        predicates=(Condition("createdAt", Op.GTE, now - timedelta(days=days)),),
        sort=(("createdAt", SortOrder.DESC),),
    )


def _best_sellers(rule: SmartRule, now: datetime) -> StrategyPatch:
    predicates: List[Predicate] = [Condition("salesCount", Op.GT, 0)]
    days = parse_days(rule.get_filter_value("lastSold"))
    if days:
        predicates.append(Condition("lastSold", Op.GTE, now - timedelta(days=days)))
    return StrategyPatch(
        predicates=tuple(predicates),
        sort=(("salesCount", SortOrder.DESC), ("lastSold", SortOrder.DESC)),
        force_sort=True,
    )


def _trending(rule: SmartRule, now: datetime) -> StrategyPatch:
    since = now - timedelta(days=TRENDING_DAYS)
    return StrategyPatch(
        predicates=(any_of(
            Condition("lastSold", Op.GTE, since),
            Condition("updatedAt", Op.GTE, since),
        ),),
        sort=(("lastSold", SortOrder.DESC),),
    )


def _clearance_sale(rule: SmartRule, now: datetime) -> StrategyPatch:
    discount_percent = Arithmetic(
        "*",
        Arithmetic(
            "/",
            Arithmetic("-", FieldRef("sellingPrice"), FieldRef("discountedPrice")),
            FieldRef("sellingPrice"),
        ),
        Literal(100),
    )
    return StrategyPatch(
        stages=(
            ComputeStage("discountPercent", discount_percent),
            MatchStage(Condition("discountPercent", Op.GTE, CLEARANCE_MIN_PERCENT)),
        ),
        sort=(("discountPercent", SortOrder.DESC),),
        force_sort=True,
    )


def _heavy_discount(rule: SmartRule, now: datetime) -> StrategyPatch:
    predicates: List[Predicate] = [Condition("discountedPrice", Op.EXISTS, True)]
    min_discount = _number_or(rule.get_filter_value("minDiscount"), 0)
    if 0 < min_discount <= 100:
        factor = 1 - (min_discount / 100)
        predicates.append(ExpressionCondition(
            FieldRef("discountedPrice"),
            Op.LTE,
            Arithmetic("*", FieldRef("sellingPrice"), Literal(factor)),
        ))
    return StrategyPatch(
        predicates=tuple(predicates),
        sort=(("discountedPrice", SortOrder.ASC),),
    )


def _category_based(rule: SmartRule, now: datetime) -> StrategyPatch:
    candidate = rule.get_filter_value("category") or rule.category_id
    if candidate is None:
        return StrategyPatch()
    try:
        category_id = parse_identifier(candidate)
    except InvalidReferenceError:
        get_logger("storefront.rule_compiler").warning(
            "Ignoring malformed category reference", rule_id=rule.rule_id
        )
        return StrategyPatch()
    return StrategyPatch(predicates=(Condition("categoryId", Op.EQ, category_id),))


def _low_stock(rule: SmartRule, now: datetime) -> StrategyPatch:
    raw = rule.get_filter_value("threshold")
    if raw is None:
        raw = rule.get_filter_value("quantity")
    threshold = _number_or(raw, LOW_STOCK_THRESHOLD)
    return StrategyPatch(predicates=(Condition("inventory.quantity", Op.LTE, threshold),))


def _dead_stock(rule: SmartRule, now: datetime) -> StrategyPatch:
    days = parse_days(rule.get_filter_value("dormantDays")) or DEAD_STOCK_DORMANT_DAYS
    return StrategyPatch(
        predicates=(
            Condition("inventory.quantity", Op.GT, DEAD_STOCK_MIN_QUANTITY),
            any_of(
                Condition("lastSold", Op.EXISTS, False),
                Condition("lastSold", Op.LT, now - timedelta(days=days)),
            ),
        ),
        sort=(("createdAt", SortOrder.ASC),),
        force_sort=True,
    )


def _price_range(rule: SmartRule, now: datetime) -> StrategyPatch:
    low = _number_or(rule.get_filter_value("price_min"), PRICE_RANGE_MIN)
    high = _number_or(rule.get_filter_value("price_max"), PRICE_RANGE_MAX)
    return StrategyPatch(predicates=(
        Condition("sellingPrice", Op.GTE, low),
        Condition("sellingPrice", Op.LTE, high),
    ))


def _custom_query(rule: SmartRule, now: datetime) -> StrategyPatch:
    return StrategyPatch(sort=(("createdAt", SortOrder.DESC),))


Strategy = Callable[[SmartRule, datetime], StrategyPatch]

STRATEGIES: Dict[RuleType, Strategy] = {
    RuleType.NEW_ARRIVALS: _new_arrivals,
    RuleType.BEST_SELLERS: _best_sellers,
    RuleType.TRENDING: _trending,
    RuleType.CLEARANCE_SALE: _clearance_sale,
    RuleType.HEAVY_DISCOUNT: _heavy_discount,
    RuleType.CATEGORY_BASED: _category_based,
    RuleType.LOW_STOCK: _low_stock,
    RuleType.DEAD_STOCK: _dead_stock,
    RuleType.PRICE_RANGE: _price_range,
    RuleType.CUSTOM_QUERY: _custom_query,
}

# Filter fields a strategy reads itself; the generic translator skips them.
STRATEGY_FIELDS: Dict[RuleType, FrozenSet[str]] = {
    RuleType.NEW_ARRIVALS: frozenset({"createdAt"}),
    RuleType.BEST_SELLERS: frozenset({"lastSold"}),
    RuleType.TRENDING: frozenset(),
    RuleType.CLEARANCE_SALE: frozenset(),
    RuleType.HEAVY_DISCOUNT: frozenset({"minDiscount"}),
    RuleType.CATEGORY_BASED: frozenset({"category"}),
    RuleType.LOW_STOCK: frozenset({"threshold", "quantity"}),
    RuleType.DEAD_STOCK: frozenset({"dormantDays"}),
    RuleType.PRICE_RANGE: frozenset({"price_min", "price_max"}),
    RuleType.CUSTOM_QUERY: frozenset(),
    RuleType.MANUAL_SELECTION: frozenset(),
}


def base_predicate(organization_id: str) -> Predicate:
    """Tenant scope, active, not soft-deleted."""
    return all_of(
        Condition("organizationId", Op.EQ, organization_id),
        Condition("isActive", Op.EQ, True),
        Condition("isDeleted", Op.NE, True),
    )


class RuleCompiler:
    """Compiles smart rules into query plans."""

    def __init__(self, translator: Optional[FilterTranslator] = None):
        self.translator = translator or FilterTranslator()
        self.logger = get_logger("storefront.rule_compiler")

    def compile(
        self,
        rule: SmartRule,
        organization_id: str,
        now: Optional[datetime] = None,
        limit_override: Optional[int] = None,
    ) -> CompiledQueryPlan:
        """Build the plan for one execution of `rule` in `organization_id`."""
        now = now or datetime.now(timezone.utc)

        if rule.rule_type == RuleType.MANUAL_SELECTION:
            return self._compile_manual(rule, organization_id, limit_override)

        patch = STRATEGIES[rule.rule_type](rule, now)
        filters = self.translator.translate_all(rule.filters, STRATEGY_FIELDS[rule.rule_type])

        head = MatchStage(all_of(base_predicate(organization_id), *patch.predicates, *filters))
        plan = CompiledQueryPlan(
            stages=(head,) + patch.stages,
            sort=self._resolve_sort(rule, patch),
            limit=clamp_limit(limit_override or rule.limit, DEFAULT_ADHOC_LIMIT),
        )

        self.logger.debug(
            "Rule compiled",
            rule_id=rule.rule_id,
            rule_type=rule.rule_type.value,
            filters=len(filters),
            limit=plan.limit,
        )
        return plan

    def _compile_manual(self, rule: SmartRule, organization_id: str, limit_override: Optional[int]) -> CompiledQueryPlan:
        # Evaluated standalone: generic filters never apply to a hand-picked list
        ids: List[str] = []
        for product_id in rule.manual_product_ids:
            if not is_valid_identifier(product_id):
                self.logger.warning("Dropping malformed manual product id", rule_id=rule.rule_id)
                continue
            if product_id not in ids:
                ids.append(product_id)

        if ids:
            predicate = all_of(base_predicate(organization_id), Condition("id", Op.IN, tuple(ids)))
        else:
            predicate = MATCH_NOTHING

        limit = min(len(ids), MAX_LIMIT)
        if limit_override:
            limit = min(limit, clamp_limit(limit_override))

        return CompiledQueryPlan(
            stages=(MatchStage(predicate),),
            sort=(),
            limit=max(1, limit),
            preserve_order=tuple(ids),
        )

    def _resolve_sort(self, rule: SmartRule, patch: StrategyPatch) -> Tuple[Tuple[str, SortOrder], ...]:
        if patch.force_sort:
            keys = patch.sort
        else:
            requested = self.translator.resolve_field(rule.sort_by) if rule.sort_by else None
            if requested and requested not in SORTABLE_FIELDS:
                self.logger.warning("Ignoring unsupported sort field", rule_id=rule.rule_id, sort_by=rule.sort_by)
                requested = None

            if requested:
                keys = ((requested, rule.sort_order or SortOrder.DESC),)
            elif patch.sort:
                keys = patch.sort
            else:
                keys = (("createdAt", SortOrder.DESC),)

        # A unique trailing key keeps results deterministic between runs
        if all(field != "id" for field, _ in keys):
            keys = tuple(keys) + (("id", SortOrder.ASC),)
        return tuple(keys)
