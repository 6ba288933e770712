"""
In-memory catalog store.

Evaluates compiled query plans directly against Python dicts. Used for local
development, demos and tests; semantics mirror the PostgreSQL store:
dotted paths descend into lists (`inventory.quantity`), list-valued fields
match when any element matches, and missing values never satisfy a
comparison.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from shared.logging import get_logger
from ..rules.models import SortOrder
from ..rules.plan import (
    AllOf, AnyOf, Arithmetic, CompiledQueryPlan, ComputeStage, Condition,
    Expression, ExpressionCondition, FieldRef, Literal, MatchStage, Op, Predicate,
)
from .base import CatalogStore


def resolve_path(record: Dict[str, Any], path: str) -> Tuple[Any, bool]:
    """Value at a dotted path and whether it is a list of candidates."""
    values: List[Any] = [record]
    multi = False
    for part in path.split("."):
        collected: List[Any] = []
        for value in values:
            if isinstance(value, list):
                multi = True
                collected.extend(item.get(part) for item in value if isinstance(item, dict))
            elif isinstance(value, dict):
                collected.append(value.get(part))
        values = collected

    if len(values) == 1 and not multi:
        value = values[0]
        if isinstance(value, list):
            return value, True
        return value, False
    return values, True


def _normalize(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    if isinstance(value, Decimal):
        return float(value)
    return value


def _compare(left: Any, op: Op, right: Any) -> bool:
    if left is None or right is None:
        return False
    left, right = _normalize(left), _normalize(right)
    try:
        if op == Op.GT:
            return left > right
        if op == Op.GTE:
            return left >= right
        if op == Op.LT:
            return left < right
        if op == Op.LTE:
            return left <= right
    except TypeError:
        return False
    return False


class PlanEvaluator:
    """Applies plan stages, sort and limit to records."""

    def __init__(self):
        self.logger = get_logger("storefront.catalog.evaluator")

    def run(self, plan: CompiledQueryPlan, records: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Matching records, without sort or limit."""
        current = [dict(record) for record in records]
        for stage in plan.stages:
            if isinstance(stage, MatchStage):
                current = [record for record in current if self.matches(stage.predicate, record)]
            elif isinstance(stage, ComputeStage):
                for record in current:
                    record[stage.name] = self.evaluate_expression(stage.expression, record)
        return current

    def sort(self, plan: CompiledQueryPlan, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if plan.preserve_order is not None:
            position = {record_id: index for index, record_id in enumerate(plan.preserve_order)}
            return sorted(records, key=lambda r: position.get(r.get("id"), len(position)))

        ordered = list(records)
        # Stable sorts applied from the least significant key; missing values last
        for field, direction in reversed(plan.sort):
            present = [r for r in ordered if self._sort_key(r, field) is not None]
            missing = [r for r in ordered if self._sort_key(r, field) is None]
            present.sort(key=lambda r: self._sort_key(r, field), reverse=(direction == SortOrder.DESC))
            ordered = present + missing
        return ordered

    def _sort_key(self, record: Dict[str, Any], field: str) -> Any:
        value, multi = resolve_path(record, field)
        if multi:
            value = min((v for v in value if v is not None), default=None)
        return _normalize(value)

    def matches(self, predicate: Predicate, record: Dict[str, Any]) -> bool:
        if isinstance(predicate, AllOf):
            return all(self.matches(p, record) for p in predicate.predicates)
        if isinstance(predicate, AnyOf):
            return any(self.matches(p, record) for p in predicate.predicates)
        if isinstance(predicate, ExpressionCondition):
            left = self.evaluate_expression(predicate.left, record)
            right = self.evaluate_expression(predicate.right, record)
            return _compare(left, predicate.op, right)
        if isinstance(predicate, Condition):
            return self._evaluate_condition(predicate, record)

        self.logger.warning("Unknown predicate node", node=type(predicate).__name__)
        return False

    def _evaluate_condition(self, condition: Condition, record: Dict[str, Any]) -> bool:
        value, multi = resolve_path(record, condition.field)
        candidates = [v for v in value if v is not None] if multi else ([] if value is None else [value])

        if condition.op == Op.EXISTS:
            return bool(candidates) == bool(condition.value)

        elif condition.op == Op.EQ:
            return any(_normalize(c) == _normalize(condition.value) for c in candidates)

        elif condition.op == Op.NE:
            return not any(_normalize(c) == _normalize(condition.value) for c in candidates)

        elif condition.op == Op.IN:
            wanted = [_normalize(v) for v in condition.value]
            return any(_normalize(c) in wanted for c in candidates)

        elif condition.op == Op.NOT_IN:
            unwanted = [_normalize(v) for v in condition.value]
            return not any(_normalize(c) in unwanted for c in candidates)

        elif condition.op == Op.CONTAINS:
            needle = str(condition.value).lower()
            return any(isinstance(c, str) and needle in c.lower() for c in candidates)

        elif condition.op in (Op.GT, Op.GTE, Op.LT, Op.LTE):
            return any(_compare(c, condition.op, condition.value) for c in candidates)

        self.logger.warning("Unknown condition operator", operator=condition.op)
        return False

    def evaluate_expression(self, expression: Expression, record: Dict[str, Any]) -> Optional[float]:
        if isinstance(expression, Literal):
            return expression.value
        if isinstance(expression, FieldRef):
            value, multi = resolve_path(record, expression.name)
            if multi or value is None or isinstance(value, bool):
                return None
            return float(value) if isinstance(value, (int, float, Decimal)) else None
        if isinstance(expression, Arithmetic):
            left = self.evaluate_expression(expression.left, record)
            right = self.evaluate_expression(expression.right, record)
            if left is None or right is None:
                return None
            if expression.operator == "+":
                return left + right
            if expression.operator == "-":
                return left - right
            if expression.operator == "*":
                return left * right
            if expression.operator == "/":
                return left / right if right else None
        return None


class InMemoryCatalogStore(CatalogStore):
    """Catalog store over a list of product dicts."""

    def __init__(self, records: Optional[Iterable[Dict[str, Any]]] = None):
        self.records: List[Dict[str, Any]] = list(records or [])
        self.evaluator = PlanEvaluator()
        self.query_count = 0

    def add(self, record: Dict[str, Any]):
        self.records.append(record)

    async def query(self, plan: CompiledQueryPlan) -> List[Dict[str, Any]]:
        self.query_count += 1
        matched = self.evaluator.run(plan, self.records)
        return self.evaluator.sort(plan, matched)[:plan.limit]

    async def count(self, plan: CompiledQueryPlan) -> int:
        return len(self.evaluator.run(plan, self.records))

    def get_store_stats(self) -> Dict[str, Any]:
        return {"records": len(self.records), "queries": self.query_count}
